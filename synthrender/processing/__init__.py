"""Processing backends for syntheme rendering."""

from .engine import (
    EngineProcess,
    EngineResult,
    FFmpegEngine,
    FFmpegProcess,
    TranscodingEngine,
    bound_diagnostics,
)

__all__ = [
    "EngineProcess",
    "EngineResult",
    "FFmpegEngine",
    "FFmpegProcess",
    "TranscodingEngine",
    "bound_diagnostics",
]
