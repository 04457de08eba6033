"""Bootstrap logic that prepares the runtime storage areas."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

from . import config as config_module
from .config import AppConfig, load_config
from .errors import BootstrapError

LOGGER = logging.getLogger(__name__)


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        areas = (
            ("storage", self._config.storage_root),
            ("uploads", self._config.uploads_dir),
            ("outputs", self._config.outputs_dir),
            ("sessions", self._config.sessions_dir),
        )
        for label, path in areas:
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(
                    f"The {label} directory '{path}' is not writable. "
                    "Update config/default.json or adjust permissions."
                )
            LOGGER.debug("Ensured %s directory exists: %s", label, path)

        if not self._config.synthemes_dir.is_dir():
            raise BootstrapError(
                f"The synthemes directory '{self._config.synthemes_dir}' does not exist."
            )


def initialize_app(
    config_path: Path | None = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path, environ=environ)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]
