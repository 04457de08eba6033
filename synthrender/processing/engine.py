"""Transcoding engine abstraction and the FFmpeg-backed implementation."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, List, Optional, Protocol, Sequence

from ..errors import EngineUnavailable


LOGGER = logging.getLogger(__name__)

MAX_DIAGNOSTIC_CHARS = 4096
TERMINATE_GRACE_SECONDS = 5.0
DURATION_TIMEOUT_SECONDS = 30.0
_STDERR_LINE_LIMIT = 200

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class EngineResult:
    """Outcome of a single engine invocation."""

    returncode: Optional[int]
    diagnostics: str = ""
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.returncode == 0


class EngineProcess(Protocol):
    """Handle on a running engine invocation."""

    @property
    def returncode(self) -> Optional[int]:
        """Exit status once the process has been reaped."""

    @property
    def diagnostics(self) -> str:
        """Bounded tail of the engine's diagnostic output."""

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until exit or *timeout*; return the exit code or ``None``."""

    def terminate(self) -> None:
        """Stop the process and reap it before returning. Idempotent."""


def bound_diagnostics(text: str, limit: int = MAX_DIAGNOSTIC_CHARS) -> str:
    """Keep the tail of *text* so the most recent engine output survives."""

    text = text.strip()
    if len(text) <= limit:
        return text
    return "…" + text[-(limit - 1):]


class TranscodingEngine:
    """Capability interface over an external transcoding engine.

    Subclasses implement :meth:`launch`; :meth:`execute` runs an invocation
    to completion on top of it.
    """

    name = "engine"

    def launch(
        self,
        input_path: Path,
        output_path: Path,
        arguments: Sequence[str],
        *,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> EngineProcess:
        raise NotImplementedError

    def media_duration(self, input_path: Path) -> Optional[float]:
        """Return the media duration of *input_path* in seconds, when known."""

        return None

    def execute(
        self,
        input_path: Path,
        output_path: Path,
        arguments: Sequence[str],
        *,
        timeout: Optional[float] = None,
    ) -> EngineResult:
        """Run one invocation and return its exit status and diagnostics."""

        process = self.launch(input_path, output_path, arguments)
        returncode = process.wait(timeout)
        if returncode is None:
            process.terminate()
            return EngineResult(process.returncode, process.diagnostics, timed_out=True)
        return EngineResult(returncode, process.diagnostics)


class FFmpegProcess:
    """A running ``ffmpeg`` child process with drained output streams."""

    def __init__(
        self,
        command: List[str],
        *,
        progress_callback: Optional[ProgressCallback] = None,
        terminate_grace: float = TERMINATE_GRACE_SECONDS,
    ) -> None:
        self._command = command
        self._progress_callback = progress_callback
        self._terminate_grace = terminate_grace
        self._stderr_lines: Deque[str] = deque(maxlen=_STDERR_LINE_LIMIT)
        self._stderr_lock = threading.Lock()
        self._terminate_lock = threading.Lock()
        try:
            self._popen = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as error:
            raise EngineUnavailable(f"Unable to launch {command[0]}: {error}") from error
        self.pid = self._popen.pid
        self._readers = [
            threading.Thread(target=self._drain_progress, name=f"ffmpeg-{self.pid}-progress", daemon=True),
            threading.Thread(target=self._drain_stderr, name=f"ffmpeg-{self.pid}-stderr", daemon=True),
        ]
        for reader in self._readers:
            reader.start()

    @property
    def returncode(self) -> Optional[int]:
        return self._popen.returncode

    @property
    def diagnostics(self) -> str:
        with self._stderr_lock:
            text = "\n".join(self._stderr_lines)
        return bound_diagnostics(text)

    def _drain_progress(self) -> None:
        stream = self._popen.stdout
        if stream is None:
            return
        for line in stream:
            key, _, value = line.strip().partition("=")
            # ffmpeg reports both keys in microseconds.
            if key not in {"out_time_us", "out_time_ms"}:
                continue
            try:
                seconds = int(value) / 1_000_000
            except ValueError:
                continue
            if self._progress_callback is not None and seconds >= 0:
                try:
                    self._progress_callback(seconds)
                except Exception:  # noqa: BLE001 - progress must never break the render
                    LOGGER.exception("Progress callback failed for ffmpeg pid %s", self.pid)

    def _drain_stderr(self) -> None:
        stream = self._popen.stderr
        if stream is None:
            return
        for line in stream:
            stripped = line.rstrip()
            if not stripped:
                continue
            with self._stderr_lock:
                self._stderr_lines.append(stripped)

    def _join_readers(self) -> None:
        for reader in self._readers:
            reader.join(timeout=1.0)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            returncode = self._popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._join_readers()
        return returncode

    def terminate(self) -> None:
        with self._terminate_lock:
            if self._popen.poll() is None:
                LOGGER.debug("Terminating ffmpeg pid %s", self.pid)
                self._popen.terminate()
                try:
                    self._popen.wait(timeout=self._terminate_grace)
                except subprocess.TimeoutExpired:
                    LOGGER.warning(
                        "ffmpeg pid %s ignored SIGTERM for %.1fs; killing",
                        self.pid,
                        self._terminate_grace,
                    )
                    self._popen.kill()
                    self._popen.wait()
            self._join_readers()


class FFmpegEngine(TranscodingEngine):
    """Run synthemes through the ``ffmpeg`` command-line tool."""

    name = "ffmpeg"

    def __init__(
        self,
        binary: str = "ffmpeg",
        *,
        ffprobe_binary: str = "ffprobe",
        terminate_grace: float = TERMINATE_GRACE_SECONDS,
    ) -> None:
        self._binary = binary
        self._ffprobe_binary = ffprobe_binary
        self._terminate_grace = terminate_grace

    def resolve_binary(self) -> Optional[str]:
        return shutil.which(self._binary)

    def available(self) -> bool:
        return self.resolve_binary() is not None

    def media_duration(self, input_path: Path) -> Optional[float]:
        """Read the container duration with ``ffprobe``.

        Returns ``None`` when ffprobe is missing, fails, or the asset has no
        duration (still images).
        """

        binary = shutil.which(self._ffprobe_binary)
        if binary is None:
            LOGGER.debug("'%s' not found; duration unknown", self._ffprobe_binary)
            return None
        command = [
            binary,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "json",
            str(input_path),
        ]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=DURATION_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            LOGGER.warning("Duration lookup failed for %s: %s", input_path.name, error)
            return None
        if result.returncode != 0:
            LOGGER.debug("ffprobe exited with %s for %s", result.returncode, input_path.name)
            return None
        try:
            duration = float(json.loads(result.stdout or "{}").get("format", {}).get("duration"))
        except (TypeError, ValueError, AttributeError):
            return None
        return duration if duration > 0 else None

    def build_command(self, binary: str, arguments: Sequence[str]) -> List[str]:
        return [
            binary,
            "-hide_banner",
            "-nostdin",
            "-loglevel",
            "error",
            "-y",
            "-progress",
            "pipe:1",
            "-nostats",
            *arguments,
        ]

    def launch(
        self,
        input_path: Path,
        output_path: Path,
        arguments: Sequence[str],
        *,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> FFmpegProcess:
        binary = self.resolve_binary()
        if binary is None:
            raise EngineUnavailable(
                f"Rendering requires '{self._binary}' to be installed on the server."
            )

        output_path.parent.mkdir(parents=True, exist_ok=True)
        command = self.build_command(binary, arguments)
        LOGGER.debug("Executing FFmpeg command: %s", " ".join(command))
        started = time.perf_counter()
        process = FFmpegProcess(
            command,
            progress_callback=progress_callback,
            terminate_grace=self._terminate_grace,
        )
        LOGGER.debug(
            "Launched ffmpeg pid %s for %s in %.1fms",
            process.pid,
            input_path.name,
            (time.perf_counter() - started) * 1000.0,
        )
        return process


__all__ = [
    "EngineProcess",
    "EngineResult",
    "FFmpegEngine",
    "FFmpegProcess",
    "MAX_DIAGNOSTIC_CHARS",
    "DURATION_TIMEOUT_SECONDS",
    "TranscodingEngine",
    "bound_diagnostics",
]
