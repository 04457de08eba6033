"""FastAPI application exposing the render service as a small JSON API."""

from __future__ import annotations

import contextvars
import logging
import re
import tempfile
import time
import uuid
from typing import IO, Any, BinaryIO, Dict, Iterator, List, Optional, Tuple

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, Response, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.types import ASGIApp, Receive, Scope, Send

from ..errors import (
    ArtifactNotReady,
    ContentMismatch,
    EmptyUpload,
    NotFound,
    RenderPipelineError,
    SchedulerClosed,
    StorageError,
    TooLarge,
    UnsupportedType,
    ValidationError,
)
from ..services.events import emit_structured_event
from ..services.pipeline import RenderService


_DOWNLOAD_CHUNK_SIZE = 256 * 1024
_SPOOL_MAX_BYTES = 1024 * 1024
# Room for multipart boundaries, part headers and the small form fields.
MULTIPART_OVERHEAD_BYTES = 64 * 1024

_RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")

_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "synthrender_request_id",
    default=None,
)
_JOB_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "synthrender_job_id",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = request_id
    job_id = _JOB_ID_VAR.get()
    if job_id:
        context["job_id"] = job_id
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope.setdefault("state", {})
        if isinstance(scope["state"], dict):
            scope["state"]["request_id"] = request_id

        async def send_with_request_id(message: Dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode("ascii")))
                message["headers"] = headers
            await send(message)

        request_token = _REQUEST_ID_VAR.set(request_id)
        job_token = _JOB_ID_VAR.set(None)
        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            _JOB_ID_VAR.reset(job_token)
            _REQUEST_ID_VAR.reset(request_token)


class _BodyTooLarge(Exception):
    pass


class BodyLimitMiddleware:
    """Refuse request bodies larger than ``max_body_bytes`` with a 413.

    A declared ``Content-Length`` over the limit is refused before any body
    byte is received. Bodies without a declared length are counted as they
    arrive and cut off once they pass the limit.
    """

    def __init__(self, app: ASGIApp, *, max_body_bytes: int) -> None:
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        declared = _declared_length(scope)
        if declared is not None and declared > self.max_body_bytes:
            await self._reject(scope, receive, send, declared)
            return

        received = 0
        exceeded = False
        response_started = False

        async def limited_receive() -> Dict[str, Any]:
            nonlocal received, exceeded
            message = await receive()
            if message.get("type") == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_bytes:
                    exceeded = True
                    raise _BodyTooLarge()
            return message

        async def guarded_send(message: Dict[str, Any]) -> None:
            nonlocal response_started
            if exceeded and not response_started:
                return
            if message.get("type") == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, guarded_send)
        except Exception:
            if not exceeded:
                raise
        if exceeded and not response_started:
            await self._reject(scope, receive, send, received)

    async def _reject(self, scope: Scope, receive: Receive, send: Send, received: int) -> None:
        error = TooLarge(self.max_body_bytes, received=received)
        _emit_request_event(
            "Request body refused",
            payload={"path": scope.get("path"), "received": received, "limit": self.max_body_bytes},
            level=logging.WARNING,
        )
        response = JSONResponse(
            status_code=413,
            content={"detail": {"message": str(error), "kind": error.kind}},
            headers={"Connection": "close"},
        )
        await response(scope, receive, send)


def _declared_length(scope: Scope) -> Optional[int]:
    for name, value in scope.get("headers", []):
        if name.lower() == b"content-length":
            try:
                return int(value)
            except ValueError:
                return None
    return None


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra or {})
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("synthrender.web.events"), {})


def _emit_request_event(
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
) -> None:
    emit_structured_event(
        "REQUEST",
        message,
        payload=payload,
        context=_collect_correlation_context(),
        duration_ms=duration_ms,
        level=level,
        logger=EVENT_LOGGER,
    )


def _http_error(error: RenderPipelineError) -> HTTPException:
    """Translate a pipeline error into the matching HTTP response."""

    if isinstance(error, TooLarge):
        code = 413
    elif isinstance(error, UnsupportedType):
        code = 415
    elif isinstance(error, (ContentMismatch, EmptyUpload, ValidationError)):
        code = 422
    elif isinstance(error, NotFound):
        code = 404
    elif isinstance(error, ArtifactNotReady):
        code = 409
    elif isinstance(error, SchedulerClosed):
        code = 503
    elif isinstance(error, StorageError):
        code = 507
    else:
        code = 500

    detail: Dict[str, Any] = {"message": str(error)}
    kind = getattr(error, "kind", None)
    if kind:
        detail["kind"] = kind
    return HTTPException(status_code=code, detail=detail)


class SynthemeEntry(BaseModel):
    name: str
    description: str = ""
    accepts: List[str] = []
    output_extension: str
    output_content_type: str


class SynthemeListResponse(BaseModel):
    synthemes: List[SynthemeEntry]


class HealthResponse(BaseModel):
    status: str
    synthemes: int
    running: int
    queued: int
    max_concurrent: int
    engine_available: bool


class UploadSessionRequest(BaseModel):
    content_type: str
    filename: Optional[str] = None


class CompleteUploadRequest(BaseModel):
    syntheme: str
    timeout_seconds: Optional[float] = None


class RangeNotSatisfiable(ValueError):
    def __init__(self, size: int) -> None:
        super().__init__(f"Requested range is outside the {size} byte artifact")
        self.size = size


def parse_byte_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Return the inclusive ``(start, end)`` span requested by *header*.

    ``None`` means the whole file should be served: the header is absent,
    malformed or asks for several ranges. A well-formed range that starts past
    the end of the file raises :class:`RangeNotSatisfiable`.
    """

    if not header:
        return None
    match = _RANGE_PATTERN.match(header.strip())
    if match is None:
        return None
    first, last = match.groups()
    if not first and not last:
        return None
    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(size)
        return max(0, size - suffix), size - 1
    start = int(first)
    end = int(last) if last else size - 1
    if end < start:
        return None
    if start >= size:
        raise RangeNotSatisfiable(size)
    return start, min(end, size - 1)


def _iter_artifact(handle: BinaryIO, start: int, length: int) -> Iterator[bytes]:
    with handle:
        handle.seek(start)
        remaining = length
        while remaining > 0:
            chunk = handle.read(min(_DOWNLOAD_CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


async def _spool_body(request: Request, limit: int) -> IO[bytes]:
    """Copy the raw request body into a spooled file, refusing more than *limit* bytes."""

    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise TooLarge(limit, received=int(declared))
    spool = tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES)
    received = 0
    try:
        async for chunk in request.stream():
            received += len(chunk)
            if received > limit:
                raise TooLarge(limit, received=received)
            spool.write(chunk)
        spool.seek(0)
    except BaseException:
        spool.close()
        raise
    return spool


def create_app(service: RenderService, *, manage_lifecycle: bool = True) -> FastAPI:
    """Return a configured FastAPI application bound to *service*."""

    app = FastAPI(
        title="Syntheme Render",
        description="Apply synthemes to uploaded media",
    )
    app.state.service = service
    app.add_middleware(
        BodyLimitMiddleware,
        max_body_bytes=service.config.max_upload_bytes + MULTIPART_OVERHEAD_BYTES,
    )
    app.add_middleware(RequestContextMiddleware)

    if manage_lifecycle:
        app.add_event_handler("startup", service.start)
        app.add_event_handler("shutdown", service.shutdown)

    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(**service.health())

    @app.get("/api/synthemes", response_model=SynthemeListResponse)
    async def list_synthemes() -> SynthemeListResponse:
        entries = [
            SynthemeEntry(**service.describe_syntheme(name).describe()) for name in service.list_synthemes()
        ]
        return SynthemeListResponse(synthemes=entries)

    @app.post("/api/jobs", status_code=status.HTTP_202_ACCEPTED)
    async def create_job(
        file: UploadFile = File(...),
        syntheme: str = Form(...),
        timeout_seconds: Optional[float] = Form(None),
    ) -> Dict[str, Any]:
        started = time.perf_counter()
        LOGGER.info("Render request for syntheme '%s' (%s)", syntheme, file.content_type)
        try:
            job_id = await run_in_threadpool(
                service.create_job,
                file.file,
                file.content_type,
                syntheme,
                filename=file.filename,
                declared_size=getattr(file, "size", None),
                timeout_seconds=timeout_seconds,
            )
        except ValueError as error:
            raise HTTPException(status_code=422, detail=str(error)) from error
        except RenderPipelineError as error:
            _emit_request_event(
                "Render request rejected",
                payload={"syntheme": syntheme, "error": type(error).__name__},
                level=logging.WARNING,
            )
            raise _http_error(error) from error
        finally:
            await file.close()

        _JOB_ID_VAR.set(job_id)
        _emit_request_event(
            "Render request accepted",
            payload={"syntheme": syntheme},
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return service.get_status(job_id).to_dict()

    @app.get("/api/jobs/{job_id}")
    async def get_job(job_id: str) -> Dict[str, Any]:
        try:
            return service.get_status(job_id).to_dict()
        except RenderPipelineError as error:
            raise _http_error(error) from error

    @app.post("/api/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str) -> Dict[str, Any]:
        _JOB_ID_VAR.set(job_id)
        try:
            job_status = await run_in_threadpool(service.cancel_job, job_id)
        except RenderPipelineError as error:
            raise _http_error(error) from error
        _emit_request_event("Cancellation requested", payload={"state": job_status.state})
        return job_status.to_dict()

    @app.get("/api/jobs/{job_id}/artifact")
    async def download_artifact(
        job_id: str,
        range_header: Optional[str] = Header(None, alias="range"),
    ) -> StreamingResponse:
        try:
            artifact, handle = service.open_artifact(job_id)
        except RenderPipelineError as error:
            raise _http_error(error) from error

        size = artifact.size_bytes
        try:
            requested = parse_byte_range(range_header, size)
        except RangeNotSatisfiable as error:
            handle.close()
            raise HTTPException(
                status_code=416,
                detail={"message": str(error), "kind": "range_not_satisfiable"},
                headers={"Content-Range": f"bytes */{size}"},
            ) from error

        headers = {
            "Accept-Ranges": "bytes",
            "Content-Disposition": f'attachment; filename="{artifact.path.name}"',
        }
        if requested is None:
            headers["Content-Length"] = str(size)
            return StreamingResponse(
                _iter_artifact(handle, 0, size),
                media_type=artifact.content_type,
                headers=headers,
            )

        start, end = requested
        length = end - start + 1
        headers["Content-Length"] = str(length)
        headers["Content-Range"] = f"bytes {start}-{end}/{size}"
        return StreamingResponse(
            _iter_artifact(handle, start, length),
            status_code=206,
            media_type=artifact.content_type,
            headers=headers,
        )

    @app.post("/api/uploads", status_code=status.HTTP_201_CREATED)
    async def begin_upload(payload: UploadSessionRequest) -> Dict[str, Any]:
        try:
            session = await run_in_threadpool(
                service.begin_upload,
                payload.content_type,
                filename=payload.filename,
            )
        except RenderPipelineError as error:
            raise _http_error(error) from error
        _emit_request_event("Upload session opened", payload={"upload_id": session.id})
        return session.describe()

    @app.get("/api/uploads/{session_id}")
    async def get_upload(session_id: str) -> Dict[str, Any]:
        try:
            return service.sessions.get(session_id).describe()
        except RenderPipelineError as error:
            raise _http_error(error) from error

    @app.put("/api/uploads/{session_id}/chunks/{index}")
    async def upload_chunk(session_id: str, index: int, request: Request) -> Dict[str, Any]:
        try:
            service.sessions.get(session_id)
            body = await _spool_body(request, service.sessions.max_chunk_bytes)
        except RenderPipelineError as error:
            raise _http_error(error) from error

        try:
            received = await run_in_threadpool(service.append_upload_chunk, session_id, index, body)
        except ValueError as error:
            raise HTTPException(status_code=422, detail=str(error)) from error
        except RenderPipelineError as error:
            raise _http_error(error) from error
        finally:
            body.close()
        return {"upload_id": session_id, "index": index, "received": received}

    @app.post("/api/uploads/{session_id}/complete", status_code=status.HTTP_202_ACCEPTED)
    async def complete_upload(session_id: str, payload: CompleteUploadRequest) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            job_id = await run_in_threadpool(
                service.complete_upload,
                session_id,
                payload.syntheme,
                timeout_seconds=payload.timeout_seconds,
            )
        except ValueError as error:
            raise HTTPException(status_code=422, detail=str(error)) from error
        except RenderPipelineError as error:
            _emit_request_event(
                "Chunked upload rejected",
                payload={"upload_id": session_id, "error": type(error).__name__},
                level=logging.WARNING,
            )
            raise _http_error(error) from error

        _JOB_ID_VAR.set(job_id)
        _emit_request_event(
            "Chunked upload accepted",
            payload={"upload_id": session_id, "syntheme": payload.syntheme},
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return service.get_status(job_id).to_dict()

    @app.delete("/api/uploads/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def discard_upload(session_id: str) -> Response:
        try:
            await run_in_threadpool(service.discard_upload, session_id)
        except RenderPipelineError as error:
            raise _http_error(error) from error
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


__all__ = [
    "BodyLimitMiddleware",
    "ContextualLoggerAdapter",
    "MULTIPART_OVERHEAD_BYTES",
    "RangeNotSatisfiable",
    "RequestContextMiddleware",
    "create_app",
    "parse_byte_range",
]
