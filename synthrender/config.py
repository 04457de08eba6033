"""Configuration loading utilities for the syntheme render service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import ConfigError


LOGGER = logging.getLogger(__name__)


ENV_PREFIX = "SYNTHRENDER_"

_PERMISSION_SENTINEL = ".synthrender_write_check"

_DEFAULTS: Dict[str, Any] = {
    "bind_address": "0.0.0.0",
    "port": 8090,
    "storage_root": "storage",
    "synthemes_dir": "synthemes",
    "ffmpeg_binary": "ffmpeg",
    "ffprobe_binary": "ffprobe",
    "max_concurrent_jobs": 2,
    "job_timeout_seconds": 600.0,
    "max_upload_bytes": 100 * 1024 * 1024,
    "max_chunk_bytes": 6 * 1024 * 1024,
    "upload_session_ttl_seconds": 60 * 60.0,
    "retention_seconds": 24 * 60 * 60.0,
    "sweep_interval_seconds": 300.0,
    "orphan_grace_seconds": 60.0,
    "shutdown_grace_seconds": 30.0,
}


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _coerce(key: str, value: Any, kind: Callable[[Any], Any], *, minimum: float) -> Any:
    try:
        coerced = kind(value)
    except (TypeError, ValueError) as error:
        raise ConfigError(f"Invalid value for '{key}': {value!r}") from error
    if coerced < minimum:
        raise ConfigError(f"Value for '{key}' must be at least {minimum} (got {coerced})")
    return coerced


@dataclass(frozen=True)
class AppConfig:
    """Runtime settings and resolved paths for the service."""

    storage_root: Path
    synthemes_dir: Path
    bind_address: str = "0.0.0.0"
    port: int = 8090
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    max_concurrent_jobs: int = 2
    job_timeout_seconds: float = 600.0
    max_upload_bytes: int = 100 * 1024 * 1024
    max_chunk_bytes: int = 6 * 1024 * 1024
    upload_session_ttl_seconds: float = 60 * 60.0
    retention_seconds: float = 24 * 60 * 60.0
    sweep_interval_seconds: float = 300.0
    orphan_grace_seconds: float = 60.0
    shutdown_grace_seconds: float = 30.0

    @property
    def uploads_dir(self) -> Path:
        """Working area holding accepted source assets."""

        return (self.storage_root / "uploads").resolve()

    @property
    def outputs_dir(self) -> Path:
        """Area holding finished render artifacts."""

        return (self.storage_root / "outputs").resolve()

    @property
    def sessions_dir(self) -> Path:
        """Staging area for chunked upload sessions."""

        return (self.storage_root / "sessions").resolve()

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, Any],
        *,
        base_path: Path,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "AppConfig":
        """Build a config from *mapping*, applying ``SYNTHRENDER_*`` overrides."""

        merged: Dict[str, Any] = dict(_DEFAULTS)
        merged.update({key: value for key, value in mapping.items() if value is not None})

        env = os.environ if environ is None else environ
        for key in _DEFAULTS:
            raw = env.get(f"{ENV_PREFIX}{key.upper()}")
            if raw is None or not raw.strip():
                continue
            LOGGER.debug("Configuration override from environment: %s", key)
            merged[key] = raw.strip()

        return cls(
            storage_root=(base_path / str(merged["storage_root"])).resolve(),
            synthemes_dir=(base_path / str(merged["synthemes_dir"])).resolve(),
            bind_address=str(merged["bind_address"]),
            port=_coerce("port", merged["port"], int, minimum=1),
            ffmpeg_binary=str(merged["ffmpeg_binary"]),
            ffprobe_binary=str(merged["ffprobe_binary"]),
            max_concurrent_jobs=_coerce(
                "max_concurrent_jobs", merged["max_concurrent_jobs"], int, minimum=1
            ),
            job_timeout_seconds=_coerce(
                "job_timeout_seconds", merged["job_timeout_seconds"], float, minimum=0.001
            ),
            max_upload_bytes=_coerce(
                "max_upload_bytes", merged["max_upload_bytes"], int, minimum=1
            ),
            max_chunk_bytes=_coerce(
                "max_chunk_bytes", merged["max_chunk_bytes"], int, minimum=1
            ),
            upload_session_ttl_seconds=_coerce(
                "upload_session_ttl_seconds", merged["upload_session_ttl_seconds"], float, minimum=0
            ),
            retention_seconds=_coerce(
                "retention_seconds", merged["retention_seconds"], float, minimum=0
            ),
            sweep_interval_seconds=_coerce(
                "sweep_interval_seconds", merged["sweep_interval_seconds"], float, minimum=0.01
            ),
            orphan_grace_seconds=_coerce(
                "orphan_grace_seconds", merged["orphan_grace_seconds"], float, minimum=0
            ),
            shutdown_grace_seconds=_coerce(
                "shutdown_grace_seconds", merged["shutdown_grace_seconds"], float, minimum=0
            ),
        )


def load_config(
    config_path: Path | None = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Load the service configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"
    else:
        base_path = config_path.resolve().parent.parent

    raw_config: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with config_path.open("r", encoding="utf-8") as config_file:
                raw_config = json.load(config_file)
        except json.JSONDecodeError as error:
            raise ConfigError(f"Configuration file '{config_path}' is not valid JSON") from error
    else:
        LOGGER.warning("Configuration file '%s' not found; using defaults.", config_path)

    if not isinstance(raw_config, dict):
        raise ConfigError(f"Configuration file '{config_path}' must contain a JSON object")

    return AppConfig.from_mapping(raw_config, base_path=base_path, environ=environ)


__all__ = ["AppConfig", "ENV_PREFIX", "load_config"]
