"""Helpers for turning render job status into human readable progress."""

from __future__ import annotations

from typing import Optional

from .jobs import JobState, JobStatus


_STATE_LABELS = {
    JobState.QUEUED: "Waiting for a render slot",
    JobState.RUNNING: "Rendering",
    JobState.SUCCEEDED: "Render finished",
    JobState.FAILED: "Render failed",
    JobState.CANCELLED: "Render cancelled",
    JobState.TIMED_OUT: "Render timed out",
}


def format_progress_message(
    message: str,
    completed: Optional[float],
    total: Optional[float],
) -> str:
    """Append a percentage indicator to ``message`` when possible.

    When the totals are unavailable (``None`` or zero) the message is returned
    unchanged. Percentages are clamped to the inclusive range ``[0, 100]``.
    """

    if completed is None or total in {None, 0}:
        return message

    try:
        ratio = float(completed) / float(total)
    except (TypeError, ValueError):
        return message

    clamped = max(0.0, min(ratio, 1.0))
    percent = int(round(clamped * 100))
    return f"{message} ({percent}%)"


def format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    minutes, remainder = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{remainder:02d}"
    return f"{minutes:02d}:{remainder:02d}"


def describe_status(status: JobStatus) -> str:
    """Return a one-line summary of *status* for console output.

    When the source duration is known, the rendered position is shown as a
    percentage of it.
    """

    label = _STATE_LABELS.get(status.state, status.state.value)
    if status.state is JobState.RUNNING:
        message = f"{label} {status.syntheme} ({format_duration(status.rendered_seconds)} rendered)"
        return format_progress_message(message, status.rendered_seconds, status.media_seconds)
    if status.error_kind:
        return f"{label}: {status.error_kind}"
    return label


__all__ = ["describe_status", "format_duration", "format_progress_message"]
