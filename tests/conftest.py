from __future__ import annotations

import json
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from synthrender.bootstrap import Bootstrapper
from synthrender.config import AppConfig
from synthrender.errors import EngineUnavailable
from synthrender.processing.engine import TranscodingEngine
from synthrender.services.pipeline import RenderService
from synthrender.services.synthemes import SynthemeRegistry


MP4_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64
WAV_BYTES = b"RIFF\x24\x00\x00\x00WAVEfmt " + b"\x00" * 64
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

SYNTHEMES: Dict[str, Dict[str, Any]] = {
    "noir": {
        "description": "Black and white",
        "accepts": ["video/*", "image/*"],
        "args": ["-i", "{input}", "-vf", "format=gray", "{output}"],
    },
    "lofi": {
        "description": "Crushed audio",
        "accepts": ["audio/*"],
        "args": ["-af", "acrusher=bits=8"],
        "output_extension": ".mp3",
        "output_content_type": "audio/mpeg",
    },
}


class FakeProcess:
    """Deterministic stand-in for a running engine process."""

    def __init__(
        self,
        engine: "FakeEngine",
        output_path: Path,
        *,
        mode: str,
        delay: float,
        release: Optional[threading.Event],
        progress_callback: Optional[Callable[[float], None]],
        exit_gate: Optional[threading.Event] = None,
    ) -> None:
        self._engine = engine
        self._output_path = output_path
        self._mode = mode
        self._delay = delay
        self._release = release
        self._progress_callback = progress_callback
        self._exit_gate = exit_gate
        self._finished = threading.Event()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._returncode: Optional[int] = None
        self._diagnostics = ""
        self.terminated = False
        self.terminate_returned = False
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def diagnostics(self) -> str:
        return self._diagnostics

    def _run(self) -> None:
        if self._mode == "hang":
            return
        if self._release is not None:
            while not self._release.wait(0.01):
                if self._stop.is_set():
                    return
        elif self._delay and self._stop.wait(self._delay):
            return
        if self._progress_callback is not None:
            self._progress_callback(1.5)
        with self._lock:
            if self._finished.is_set():
                return
            if self._mode == "success":
                self._output_path.write_bytes(b"rendered-output")
                self._returncode = 0
                if self._exit_gate is not None:
                    # Hold the exit half way: output written, process not yet reaped.
                    self._exit_gate.wait(5)
            elif self._mode == "empty":
                self._output_path.write_bytes(b"")
                self._returncode = 0
            else:
                self._output_path.write_bytes(b"partial")
                self._diagnostics = "Error while filtering: boom"
                self._returncode = 1
            self._engine._process_finished()
            self._finished.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        if self._finished.wait(timeout):
            return self._returncode
        return None

    def terminate(self) -> None:
        self._stop.set()
        try:
            with self._lock:
                if self._finished.is_set():
                    return
                self.terminated = True
                self._returncode = -15
                self._engine._process_finished()
                self._finished.set()
        finally:
            self.terminate_returned = True


class FakeEngine(TranscodingEngine):
    """Engine double that never spawns a real process."""

    name = "fake"

    def __init__(
        self,
        mode: str = "success",
        *,
        delay: float = 0.0,
        release: Optional[threading.Event] = None,
        exit_gate: Optional[threading.Event] = None,
        media_seconds: Optional[float] = None,
    ) -> None:
        self.mode = mode
        self.delay = delay
        self.release = release
        self.exit_gate = exit_gate
        self.media_seconds = media_seconds
        self.launches: List[Sequence[str]] = []
        self.processes: List[FakeProcess] = []
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def available(self) -> bool:
        return self.mode != "unavailable"

    def media_duration(self, input_path):
        return self.media_seconds

    def launch(self, input_path, output_path, arguments, *, progress_callback=None):
        if self.mode == "unavailable":
            raise EngineUnavailable("fake engine is not installed")
        with self._lock:
            self.launches.append(list(arguments))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        process = FakeProcess(
            self,
            Path(output_path),
            mode=self.mode,
            delay=self.delay,
            release=self.release,
            progress_callback=progress_callback,
            exit_gate=self.exit_gate,
        )
        self.processes.append(process)
        return process

    def _process_finished(self) -> None:
        with self._lock:
            self.active -= 1


def write_synthemes(directory: Path, definitions: Dict[str, Dict[str, Any]] = SYNTHEMES) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for name, payload in definitions.items():
        (directory / f"{name}.json").write_text(json.dumps(payload), encoding="utf-8")
    return directory


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "default.json").write_text(
        json.dumps({"storage_root": "storage", "synthemes_dir": "synthemes"}),
        encoding="utf-8",
    )
    write_synthemes(tmp_path / "synthemes")
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "synthemes_dir": "synthemes",
            "max_concurrent_jobs": 2,
            "job_timeout_seconds": 5,
            "max_upload_bytes": 4096,
            "sweep_interval_seconds": 3600,
        },
        base_path=tmp_path,
        environ={},
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def make_service(temp_config: AppConfig):
    services: List[RenderService] = []

    def _factory(engine: Optional[TranscodingEngine] = None, **overrides: Any) -> RenderService:
        config = replace(temp_config, **overrides) if overrides else temp_config
        service = RenderService(
            config,
            engine=engine or FakeEngine(),
            registry=SynthemeRegistry.load(config.synthemes_dir),
        )
        services.append(service)
        return service

    yield _factory

    for service in services:
        service.shutdown(0)
