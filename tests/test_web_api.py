from __future__ import annotations

import asyncio
import time
import threading

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from synthrender.web import create_app
from synthrender.web.server import MULTIPART_OVERHEAD_BYTES, RangeNotSatisfiable, parse_byte_range

from conftest import MP4_BYTES, PNG_BYTES, WAV_BYTES, FakeEngine


def _client(service) -> TestClient:
    return TestClient(create_app(service, manage_lifecycle=False))


def _post_job(client: TestClient, payload: bytes = MP4_BYTES, content_type: str = "video/mp4", syntheme: str = "noir"):
    return client.post(
        "/api/jobs",
        files={"file": ("clip.mp4", payload, content_type)},
        data={"syntheme": syntheme},
    )


def _wait_for_terminal(client: TestClient, job_id: str, timeout: float = 2.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/jobs/{job_id}").json()
        if body["state"] not in {"queued", "running"}:
            return body
        time.sleep(0.02)
    raise AssertionError("job did not settle")


def test_health_and_synthemes(make_service) -> None:
    client = _client(make_service(FakeEngine()))

    health = client.get("/api/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["synthemes"] == 2
    assert health.headers["x-request-id"]

    listing = client.get("/api/synthemes").json()["synthemes"]
    assert [entry["name"] for entry in listing] == ["lofi", "noir"]
    assert listing[0]["output_content_type"] == "audio/mpeg"


def test_render_round_trip(make_service) -> None:
    client = _client(make_service(FakeEngine("success")))

    response = _post_job(client)
    assert response.status_code == 202
    job_id = response.json()["id"]

    body = _wait_for_terminal(client, job_id)
    assert body["state"] == "succeeded"
    assert body["syntheme"] == "noir"

    artifact = client.get(f"/api/jobs/{job_id}/artifact")
    assert artifact.status_code == 200
    assert artifact.content == b"rendered-output"
    assert artifact.headers["content-type"].startswith("video/mp4")


def test_failed_job_reports_error_kind(make_service) -> None:
    client = _client(make_service(FakeEngine("fail")))

    job_id = _post_job(client).json()["id"]
    body = _wait_for_terminal(client, job_id)

    assert body["state"] == "failed"
    assert body["error_kind"] == "engine_failure"
    assert "boom" in body["error_detail"]
    assert client.get(f"/api/jobs/{job_id}/artifact").status_code == 409


def test_artifact_not_ready_while_running(make_service) -> None:
    release = threading.Event()
    client = _client(make_service(FakeEngine("success", release=release)))

    job_id = _post_job(client).json()["id"]
    response = client.get(f"/api/jobs/{job_id}/artifact")
    release.set()

    assert response.status_code == 409


def test_cancel_endpoint(make_service) -> None:
    client = _client(make_service(FakeEngine("hang")))

    job_id = _post_job(client).json()["id"]
    response = client.post(f"/api/jobs/{job_id}/cancel")

    assert response.status_code == 200
    assert response.json()["state"] == "cancelled"
    assert response.json()["error_kind"] == "cancelled"


@pytest.mark.parametrize(
    ("payload", "content_type", "syntheme", "expected"),
    [
        (MP4_BYTES, "video/mp4", "missing", 404),
        (b"%PDF-1.7 document", "application/pdf", "noir", 415),
        (WAV_BYTES, "audio/wav", "noir", 415),
        (PNG_BYTES, "video/mp4", "noir", 422),
        (b"", "video/mp4", "noir", 422),
        (MP4_BYTES * 100, "video/mp4", "noir", 413),
    ],
)
def test_rejected_uploads(make_service, payload, content_type, syntheme, expected) -> None:
    service = make_service(FakeEngine())
    client = _client(service)

    response = _post_job(client, payload, content_type, syntheme)

    assert response.status_code == expected
    assert service.manager.list() == []
    assert list(service.store.uploads_dir.iterdir()) == []


def test_unknown_job_is_not_found(make_service) -> None:
    client = _client(make_service(FakeEngine()))
    missing = "f" * 32

    assert client.get(f"/api/jobs/{missing}").status_code == 404
    assert client.post(f"/api/jobs/{missing}/cancel").status_code == 404
    assert client.get(f"/api/jobs/{missing}/artifact").status_code == 404


def test_closed_service_returns_unavailable(make_service) -> None:
    service = make_service(FakeEngine())
    service.shutdown(0)
    client = _client(service)

    response = _post_job(client)

    assert response.status_code == 503
    assert client.get("/api/health").json()["status"] == "closed"


def test_lifecycle_hooks_start_and_stop_service(make_service) -> None:
    service = make_service(FakeEngine("success"))

    with TestClient(create_app(service)) as client:
        job_id = _post_job(client).json()["id"]
        assert _wait_for_terminal(client, job_id)["state"] == "succeeded"

    assert service.scheduler.closed


_BOUNDARY = "synthrenderboundary"
_STREAM_CHUNK = 64 * 1024


def _multipart_prefix() -> bytes:
    return (
        f"--{_BOUNDARY}\r\n"
        'Content-Disposition: form-data; name="syntheme"\r\n\r\n'
        "noir\r\n"
        f"--{_BOUNDARY}\r\n"
        'Content-Disposition: form-data; name="file"; filename="clip.mp4"\r\n'
        "Content-Type: video/mp4\r\n\r\n"
    ).encode("ascii") + MP4_BYTES


def _send_raw_upload(app, total_bytes: int, *, declare_length: bool):
    """Drive the ASGI app directly and count how many body bytes it pulled."""

    prefix = _multipart_prefix()
    state = {"sent": 0, "prefix_sent": False}
    messages = []

    async def receive():
        if not state["prefix_sent"]:
            state["prefix_sent"] = True
            chunk = prefix
        else:
            chunk = b"\x00" * min(_STREAM_CHUNK, total_bytes - state["sent"])
        state["sent"] += len(chunk)
        return {"type": "http.request", "body": chunk, "more_body": state["sent"] < total_bytes}

    async def send(message):
        messages.append(message)

    headers = [(b"content-type", f"multipart/form-data; boundary={_BOUNDARY}".encode("ascii"))]
    if declare_length:
        headers.append((b"content-length", str(total_bytes).encode("ascii")))
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/jobs",
        "raw_path": b"/api/jobs",
        "root_path": "",
        "query_string": b"",
        "headers": headers,
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }
    asyncio.run(app(scope, receive, send))
    start = next(message for message in messages if message["type"] == "http.response.start")
    body = b"".join(message.get("body", b"") for message in messages if message["type"] == "http.response.body")
    return start["status"], body, state["sent"]


def test_declared_oversized_body_is_refused_before_reading(make_service) -> None:
    service = make_service(FakeEngine())
    app = create_app(service, manage_lifecycle=False)

    status_code, body, consumed = _send_raw_upload(app, 8 * 1024 * 1024, declare_length=True)

    assert status_code == 413
    assert b"too_large" in body
    assert consumed == 0
    assert service.store.uploads() == []


def test_undeclared_oversized_body_is_cut_off_while_streaming(make_service) -> None:
    service = make_service(FakeEngine())
    app = create_app(service, manage_lifecycle=False)
    limit = service.config.max_upload_bytes + MULTIPART_OVERHEAD_BYTES

    status_code, body, consumed = _send_raw_upload(app, 8 * 1024 * 1024, declare_length=False)

    assert status_code == 413
    assert b"too_large" in body
    assert consumed <= limit + _STREAM_CHUNK
    assert service.store.uploads() == []
    assert list(service.config.uploads_dir.iterdir()) == []


def test_oversized_multipart_upload_returns_413(make_service) -> None:
    client = _client(make_service(FakeEngine()))

    response = _post_job(client, payload=MP4_BYTES + b"\x00" * (256 * 1024))

    assert response.status_code == 413
    assert response.json()["detail"]["kind"] == "too_large"


def test_parse_byte_range() -> None:
    assert parse_byte_range(None, 100) is None
    assert parse_byte_range("bytes=0-9", 100) == (0, 9)
    assert parse_byte_range("bytes=90-", 100) == (90, 99)
    assert parse_byte_range("bytes=90-500", 100) == (90, 99)
    assert parse_byte_range("bytes=-10", 100) == (90, 99)
    assert parse_byte_range("bytes=-500", 100) == (0, 99)
    assert parse_byte_range("bytes=0-1,5-6", 100) is None
    assert parse_byte_range("items=0-1", 100) is None
    assert parse_byte_range("bytes=9-2", 100) is None
    with pytest.raises(RangeNotSatisfiable):
        parse_byte_range("bytes=100-", 100)
    with pytest.raises(RangeNotSatisfiable):
        parse_byte_range("bytes=-0", 100)


def test_artifact_range_requests(make_service) -> None:
    client = _client(make_service(FakeEngine("success")))
    job_id = _post_job(client).json()["id"]
    _wait_for_terminal(client, job_id)
    url = f"/api/jobs/{job_id}/artifact"
    size = len(b"rendered-output")

    full = client.get(url)
    assert full.status_code == 200
    assert full.headers["accept-ranges"] == "bytes"
    assert full.headers["content-length"] == str(size)

    partial = client.get(url, headers={"Range": "bytes=0-7"})
    assert partial.status_code == 206
    assert partial.content == b"rendered"
    assert partial.headers["content-range"] == f"bytes 0-7/{size}"
    assert partial.headers["content-length"] == "8"

    suffix = client.get(url, headers={"Range": "bytes=-6"})
    assert suffix.status_code == 206
    assert suffix.content == b"output"

    unsatisfiable = client.get(url, headers={"Range": f"bytes={size}-"})
    assert unsatisfiable.status_code == 416
    assert unsatisfiable.headers["content-range"] == f"bytes */{size}"

    malformed = client.get(url, headers={"Range": "bytes=abc"})
    assert malformed.status_code == 200
    assert malformed.content == b"rendered-output"


def test_chunked_upload_flow(make_service) -> None:
    service = make_service(FakeEngine("success"))
    client = _client(service)

    opened = client.post("/api/uploads", json={"content_type": "video/mp4", "filename": "clip.mp4"})
    assert opened.status_code == 201
    upload_id = opened.json()["upload_id"]

    second = client.put(f"/api/uploads/{upload_id}/chunks/1", content=MP4_BYTES[32:])
    assert second.status_code == 200
    assert second.json() == {"upload_id": upload_id, "index": 1, "received": len(MP4_BYTES) - 32}

    gap = client.post(f"/api/uploads/{upload_id}/complete", json={"syntheme": "noir"})
    assert gap.status_code == 422
    assert gap.json()["detail"]["kind"] == "incomplete"

    assert client.put(f"/api/uploads/{upload_id}/chunks/0", content=MP4_BYTES[:32]).status_code == 200
    described = client.get(f"/api/uploads/{upload_id}").json()
    assert described["chunks"] == [0, 1]
    assert described["received_bytes"] == len(MP4_BYTES)

    completed = client.post(f"/api/uploads/{upload_id}/complete", json={"syntheme": "noir"})
    assert completed.status_code == 202
    body = _wait_for_terminal(client, completed.json()["id"])
    assert body["state"] == "succeeded"
    assert client.get(f"/api/uploads/{upload_id}").status_code == 404


def test_chunked_upload_rejections(make_service) -> None:
    service = make_service(FakeEngine(), max_chunk_bytes=64)
    client = _client(service)

    assert client.post("/api/uploads", json={"content_type": "application/zip"}).status_code == 415
    assert client.put(f"/api/uploads/{'0' * 32}/chunks/0", content=b"x").status_code == 404
    assert client.delete(f"/api/uploads/{'0' * 32}").status_code == 404

    upload_id = client.post("/api/uploads", json={"content_type": "video/mp4"}).json()["upload_id"]
    oversized = client.put(f"/api/uploads/{upload_id}/chunks/0", content=b"\x00" * 65)
    assert oversized.status_code == 413
    assert client.put(f"/api/uploads/{upload_id}/chunks/-1", content=b"x").status_code == 422
    assert client.get(f"/api/uploads/{upload_id}").json()["chunks"] == []

    assert client.delete(f"/api/uploads/{upload_id}").status_code == 204
    assert client.get(f"/api/uploads/{upload_id}").status_code == 404
    assert list(service.config.sessions_dir.iterdir()) == []


def test_resubmitting_a_rendered_source_returns_the_same_job(make_service) -> None:
    engine = FakeEngine("success")
    service = make_service(engine)
    client = _client(service)

    first = _post_job(client).json()["id"]
    _wait_for_terminal(client, first)
    again = _post_job(client)

    assert again.status_code == 202
    assert again.json()["id"] == first
    assert again.json()["state"] == "succeeded"
    assert len(engine.launches) == 1
    assert len(service.store.uploads()) == 1
