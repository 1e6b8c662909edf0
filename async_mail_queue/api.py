"""
FastAPI application factory and HTTP schemas for the mail queue.

The module exposes a `create_app` function that builds the operator API used
by the admin dashboard: queue statistics, message inspection, retries and
clean-up. Authentication is enforced through a configurable API token carried
in the ``X-API-Token`` header.
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import AsyncMailQueue
from .models import MessageState, QueuedMessage
from .notifications import queue_test_email
from .queue import InvalidMessageError

app = FastAPI(title="Async Mail Queue")
service: AsyncMailQueue | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatsResponse(CommandStatus):
    total: int
    pending: int
    processing: int
    sent: int
    failed: int


class EnqueuePayload(BaseModel):
    """Notification request accepted by ``/commands/enqueue``."""
    to: Union[List[str], str]
    subject: str
    template: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    html: Optional[str] = None
    text: Optional[str] = None


class EnqueueResponse(CommandStatus):
    id: str


class MessageRecord(BaseModel):
    """Queued message as shown to operators."""
    id: str
    recipients: List[str]
    subject: str
    template: Optional[str] = None
    state: str
    attempts: int
    created_at: float
    processed_at: Optional[float] = None
    last_error: Optional[str] = None

    @classmethod
    def from_message(cls, message: QueuedMessage) -> "MessageRecord":
        return cls(
            id=message.id,
            recipients=list(message.recipients),
            subject=message.subject,
            template=message.template,
            state=message.state.value,
            attempts=message.attempts,
            created_at=message.created_at,
            processed_at=message.processed_at,
            last_error=message.last_error,
        )


class MessagesResponse(CommandStatus):
    messages: List[MessageRecord]


class MessageResponse(CommandStatus):
    message: MessageRecord


class RetryResponse(CommandStatus):
    retried: int


class ClearResponse(CommandStatus):
    removed: int


class TestEmailPayload(BaseModel):
    to: str = Field(min_length=3)


def create_app(
    svc: AsyncMailQueue,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_mail_queue.core.AsyncMailQueue` that owns
        the queue and its scheduler.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Async Mail Queue", lifespan=lifespan)
    else:
        api = app

    app.state.api_token = api_token
    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    def current_service() -> AsyncMailQueue:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @api.get("/stats", response_model=StatsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def stats():
        """Return per-state counters for the dashboard."""
        return StatsResponse(ok=True, **current_service().stats().to_dict())

    @api.get("/messages", response_model=MessagesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_messages(state: MessageState = Query(MessageState.FAILED)):
        """List the messages currently in ``state`` (failed by default)."""
        messages = current_service().list_by_state(state)
        return MessagesResponse(ok=True, messages=[MessageRecord.from_message(msg) for msg in messages])

    @api.get("/messages/{message_id}", response_model=MessageResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_message(message_id: str):
        """Return a single queued message."""
        message = current_service().get(message_id)
        if message is None:
            raise HTTPException(404, f"Message {message_id} not found")
        return MessageResponse(ok=True, message=MessageRecord.from_message(message))

    @router.post("/enqueue", response_model=EnqueueResponse, response_model_exclude_none=True)
    async def enqueue(payload: EnqueuePayload):
        """Push a notification into the queue."""
        svc = current_service()
        body: Dict[str, Any] = {}
        if payload.data is not None:
            body["data"] = payload.data
        if payload.html is not None:
            body["html"] = payload.html
        if payload.text is not None:
            body["text"] = payload.text
        try:
            message_id = svc.enqueue(payload.to, payload.subject, body, template=payload.template)
        except InvalidMessageError as exc:
            raise HTTPException(status_code=400, detail={"error": str(exc), "code": exc.code})
        return EnqueueResponse(ok=True, id=message_id)

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the dispatch loop so the next batch does not wait for the tick."""
        current_service().wake()
        return BasicOkResponse(ok=True)

    @router.post("/retry/{message_id}", response_model=RetryResponse, response_model_exclude_none=True)
    async def retry_one(message_id: str):
        """Send a failed message back to pending; other states are left untouched."""
        svc = current_service()
        if svc.get(message_id) is None:
            raise HTTPException(404, f"Message {message_id} not found")
        return RetryResponse(ok=True, retried=1 if svc.retry_one(message_id) else 0)

    @router.post("/retry-failed", response_model=RetryResponse, response_model_exclude_none=True)
    async def retry_failed():
        """Send every failed message back to pending."""
        return RetryResponse(ok=True, retried=current_service().retry_all_failed())

    @router.post("/clear-failed", response_model=ClearResponse, response_model_exclude_none=True)
    async def clear_failed():
        """Drop every failed message."""
        return ClearResponse(ok=True, removed=current_service().clear_failed())

    @router.post("/test-email", response_model=EnqueueResponse, response_model_exclude_none=True)
    async def test_email(payload: TestEmailPayload):
        """Queue a test message for the given address."""
        try:
            message_id = queue_test_email(current_service(), payload.to)
        except InvalidMessageError as exc:
            raise HTTPException(status_code=400, detail={"error": str(exc), "code": exc.code})
        return EnqueueResponse(ok=True, id=message_id)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the queue."""
        return Response(content=current_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
