from __future__ import annotations

from datetime import datetime, timezone

from rich.console import Console

from synthrender.services.cleanup import SweepReport
from synthrender.services.jobs import JobState, JobStatus
from synthrender.services.progress import describe_status, format_duration, format_progress_message
from synthrender.services.synthemes import Syntheme
from synthrender.ui.console import SynthemeOverview, render_sweep_report


def _status(state: JobState, **overrides) -> JobStatus:
    values = dict(
        id="a" * 32,
        state=state,
        syntheme="noir",
        upload_id="b" * 32,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        started_at=None,
        finished_at=None,
        timeout_seconds=60.0,
        exit_code=None,
        rendered_seconds=0.0,
        error_kind=None,
        error_detail=None,
        artifact_path=None,
        history=(JobState.QUEUED,),
    )
    values.update(overrides)
    return JobStatus(**values)


def test_format_progress_message_clamps_percentages() -> None:
    assert format_progress_message("Rendering", 5, 10) == "Rendering (50%)"
    assert format_progress_message("Rendering", 20, 10) == "Rendering (100%)"
    assert format_progress_message("Rendering", 3, None) == "Rendering"
    assert format_progress_message("Rendering", 3, 0) == "Rendering"


def test_format_duration() -> None:
    assert format_duration(75) == "01:15"
    assert format_duration(3725) == "1:02:05"


def test_describe_status_for_running_and_failed_jobs() -> None:
    running = _status(JobState.RUNNING, rendered_seconds=30.0)
    failed = _status(JobState.FAILED, error_kind="engine_failure")

    assert describe_status(running) == "Rendering noir (00:30 rendered)"
    assert describe_status(_status(JobState.RUNNING, rendered_seconds=30.0, media_seconds=60.0)) == (
        "Rendering noir (00:30 rendered) (50%)"
    )
    assert describe_status(failed) == "Render failed: engine_failure"
    assert describe_status(_status(JobState.QUEUED)) == "Waiting for a render slot"


def test_syntheme_table_lists_every_theme() -> None:
    table = SynthemeOverview.build_table(
        [
            Syntheme(name="noir", args=("-an",), accepts=("video/*",)),
            Syntheme(name="lofi", args=("-vn",), timeout_seconds=90),
        ]
    )

    assert table.row_count == 2
    assert [column.header for column in table.columns][0] == "Name"


def test_sweep_report_panel_renders_counts() -> None:
    console = Console(record=True, width=80)

    render_sweep_report(SweepReport(deleted_uploads=3, expired_sessions=2, errors=1), console=console)

    text = console.export_text()
    assert "Deleted uploads" in text
    assert "Expired upload sessions" in text
    assert "3" in text
