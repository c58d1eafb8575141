"""
FastAPI application factory and HTTP schemas for the attachment relay.

The module exposes a `create_app` function that builds the small JSON API
used to hand attachment references to the relay and to inspect the queue,
batches, recent errors and stored files. Authentication is enforced through
a configurable API token carried in the ``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, Depends, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from . import __version__
from .errors import RelayError
from .relay import AttachmentRelay

app = FastAPI(title="Attachment Relay", version=__version__)
service: AttachmentRelay | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the
    dependency lets every request through.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by every response."""
    ok: bool
    error: Optional[str] = None


class StatusResponse(CommandStatus):
    version: str
    batch_enabled: bool
    queue: Dict[str, Any]
    errors: int


class QueueResponse(CommandStatus):
    stats: Dict[str, Any]


class OwnerQueueResponse(CommandStatus):
    owner_id: str
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    entries: List[Dict[str, Any]]


class BatchResponse(CommandStatus):
    batch: Optional[Dict[str, Any]] = None


class ErrorsResponse(CommandStatus):
    total: int
    by_kind: Dict[str, int]
    by_severity: Dict[str, int]
    recent: List[Dict[str, Any]]
    frequent: List[Dict[str, Any]]


class DriveFile(BaseModel):
    id: str
    name: str
    view_link: str
    mime_type: Optional[str] = None
    size: Optional[int] = None


class FilesResponse(CommandStatus):
    files: List[DriveFile] = Field(default_factory=list)


class AttachmentPayload(BaseModel):
    """Reference to an attachment held by the messaging platform."""
    owner_id: str
    message_id: str
    file_name: str
    batch: Optional[bool] = None


class AttachmentResponse(CommandStatus):
    mode: str
    entry_id: Optional[str] = None
    batch_size: Optional[int] = None


def _service() -> AttachmentRelay:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: AttachmentRelay,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`~attachment_relay.relay.AttachmentRelay` serving requests.
    api_token:
        Optional secret; when set, every request must carry it in the
        ``X-API-Token`` header.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Attachment Relay", version=__version__, lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def relay_status():
        """Return a health payload with queue counters."""
        return StatusResponse(ok=True, version=__version__, **_service().status())

    @api.get("/queue", response_model=QueueResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def queue_stats():
        """Global queue counters and success rate."""
        return QueueResponse(ok=True, stats=_service().queue.stats())

    @api.get("/queue/{owner_id}", response_model=OwnerQueueResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def owner_queue(owner_id: str):
        """Entries queued for one owner, finished ones included until purged."""
        return OwnerQueueResponse(ok=True, **_service().queue.owner_status(owner_id))

    @api.get("/batches/{owner_id}", response_model=BatchResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def owner_batch(owner_id: str):
        batch = _service().batches.batch_status(owner_id)
        if batch is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, f"No batch for owner {owner_id}")
        return BatchResponse(ok=True, batch=batch)

    @api.get("/errors", response_model=ErrorsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def recent_errors():
        return ErrorsResponse(ok=True, **_service().error_tracker.stats())

    @api.get("/files", response_model=FilesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_files(folder_id: Optional[str] = None, limit: int = 20):
        """List the most recent files of the upload folder."""
        try:
            files = await _service().uploader.list_files(folder_id, page_size=max(1, min(limit, 100)))
        except RelayError as exc:
            raise HTTPException(status.HTTP_502_BAD_GATEWAY, str(exc))
        return FilesResponse(ok=True, files=[DriveFile(**item.to_dict()) for item in files])

    @api.post("/attachments", response_model=AttachmentResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_attachment(payload: AttachmentPayload):
        """Hand an attachment reference to the relay (direct or batch mode)."""
        result = await _service().handle_attachment(
            payload.owner_id, payload.message_id, payload.file_name, batch=payload.batch
        )
        return AttachmentResponse(ok=True, **result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the relay."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
