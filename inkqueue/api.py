"""HTTP interface: job submission and queries, live events, key administration."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse
from . import __version__
from .config import Settings, get_settings
from .exceptions import JobNotFoundError, PoolExhaustedError, QueueClosedError
from .handlers import load_registry
from .keypool import KeyPool
from .models import JobKind, JobStatus, LogLevel, utcnow
from .notifier import Notifier, SubscriberClosed
from .queue import JobQueue
from .storage import Storage

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 30.0


class SubmitRequest(BaseModel):
    type: JobKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0


class QueueConfigRequest(BaseModel):
    max_concurrent: int = Field(ge=1)


class AddKeyRequest(BaseModel):
    key: str = Field(min_length=1)


class UpdateKeyRequest(BaseModel):
    alias: Optional[str] = None
    tags: Optional[List[str]] = None
    priority: Optional[int] = None


def build_queue(settings: Settings) -> JobQueue:
    """Wire storage, key pool, handlers and notifier from settings."""
    notifier = Notifier()
    storage = Storage(settings.data_dir, defaults=settings.queue_defaults())
    pool = KeyPool(notifier=notifier, disable_threshold=settings.disable_threshold)
    keys = settings.key_list()
    if keys:
        pool.initialize(keys)
    else:
        logger.warning("No API keys configured; jobs will fail until keys are added")
    handlers = load_registry(settings.handlers)
    return JobQueue.from_config(storage, pool, handlers, notifier=notifier)


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def get_pool(request: Request) -> KeyPool:
    return request.app.state.queue.pool


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    return body


tasks_router = APIRouter(prefix="/api/tasks")
admin_router = APIRouter(prefix="/api/admin")


async def _event_stream(request: Request, notifier: Notifier) -> AsyncIterator[Dict[str, str]]:
    subscription = notifier.subscribe()
    try:
        while not await request.is_disconnected():
            try:
                frame = await subscription.get(timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                yield {"event": "heartbeat", "data": json.dumps({"timestamp": utcnow().isoformat()})}
                continue
            except SubscriberClosed:
                # dropped by the notifier, buffer drained
                break
            yield frame
    except asyncio.CancelledError:
        logger.debug("Event stream cancelled")
        raise
    finally:
        notifier.unsubscribe(subscription)


@tasks_router.get("/events")
async def task_events(request: Request, queue: JobQueue = Depends(get_queue)) -> EventSourceResponse:
    """Server-sent events: connected, task_update, log_update, key_update, heartbeat."""
    return EventSourceResponse(_event_stream(request, queue.notifier))


@tasks_router.post("")
async def submit_task(body: SubmitRequest, queue: JobQueue = Depends(get_queue)):
    job = queue.submit(body.type, body.payload, body.priority)
    return ok(job.model_dump(mode="json"))


@tasks_router.get("")
async def list_tasks(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    kind: Optional[JobKind] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    queue: JobQueue = Depends(get_queue),
):
    jobs = queue.storage.list_jobs(status=status_filter, kind=kind, limit=limit, offset=offset)
    return ok([job.model_dump(mode="json") for job in jobs])


@tasks_router.get("/stats")
async def task_stats(queue: JobQueue = Depends(get_queue)):
    return ok({**queue.storage.get_stats(), "queue": queue.get_status()})


@tasks_router.get("/queue/status")
async def queue_status(queue: JobQueue = Depends(get_queue)):
    return ok(queue.get_status())


@tasks_router.post("/queue/config")
async def configure_queue(body: QueueConfigRequest, queue: JobQueue = Depends(get_queue)):
    queue.set_max_concurrent(body.max_concurrent)
    config = queue.storage.get_config().model_copy(update={"max_concurrent": body.max_concurrent})
    queue.storage.set_config(config)
    return ok(queue.get_status(), message="Queue configuration updated")


@tasks_router.get("/{job_id}")
async def get_task(job_id: str, queue: JobQueue = Depends(get_queue)):
    job = queue.storage.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return ok(job.model_dump(mode="json"))


@tasks_router.get("/{job_id}/logs")
async def get_task_logs(
    job_id: str,
    level: Optional[LogLevel] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    queue: JobQueue = Depends(get_queue),
):
    if queue.storage.get_job(job_id) is None:
        raise JobNotFoundError(job_id)
    logs = queue.storage.get_logs(job_id, level=level, limit=limit, offset=offset)
    return ok([entry.model_dump(mode="json") for entry in logs])


@tasks_router.delete("/{job_id}")
async def delete_task(job_id: str, queue: JobQueue = Depends(get_queue)):
    """Cancel a queued job, or delete a job that isn't running."""
    if queue.cancel(job_id):
        return ok(message="Job cancelled")
    if queue.is_running(job_id):
        raise HTTPException(status.HTTP_409_CONFLICT, "Job is running and cannot be cancelled")
    if not queue.storage.delete_job(job_id):
        raise JobNotFoundError(job_id)
    return ok(message="Job deleted")


@admin_router.get("/api-keys")
async def list_keys(pool: KeyPool = Depends(get_pool)):
    return ok({"keys": pool.stats(), "total_count": pool.count(), "active_count": pool.active_count()})


@admin_router.post("/api-keys")
async def add_key(body: AddKeyRequest, pool: KeyPool = Depends(get_pool)):
    key = pool.add(body.key)
    if key is None:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "API key already exists or is invalid")
    return ok({"key_id": key.id}, message="API key added")


@admin_router.get("/api-keys/test")
async def preview_key_selection(pool: KeyPool = Depends(get_pool)):
    """Show which key the pool would hand out next."""
    try:
        return ok(pool.preview())
    except PoolExhaustedError as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(e)) from e


@admin_router.delete("/api-keys/{key_id}")
async def remove_key(key_id: str, pool: KeyPool = Depends(get_pool)):
    if not pool.remove(key_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"API key {key_id} not found")
    return ok(message="API key removed")


@admin_router.put("/api-keys/{key_id}/reactivate")
async def reactivate_key(key_id: str, pool: KeyPool = Depends(get_pool)):
    if not pool.reactivate(key_id):
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"API key {key_id} not found")
    return ok(message="API key reactivated")


@admin_router.put("/api-keys/{key_id}")
async def update_key(key_id: str, body: UpdateKeyRequest, pool: KeyPool = Depends(get_pool)):
    if not pool.update_metadata(key_id, alias=body.alias, tags=body.tags, priority=body.priority):
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"API key {key_id} not found")
    return ok(message="API key updated")


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"success": False, "error": exc.detail}, status_code=exc.status_code)


async def _not_found(request: Request, exc: JobNotFoundError) -> JSONResponse:
    return JSONResponse({"success": False, "error": str(exc)}, status_code=status.HTTP_404_NOT_FOUND)


async def _queue_closed(request: Request, exc: QueueClosedError) -> JSONResponse:
    return JSONResponse({"success": False, "error": str(exc)}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Drop raw inputs so payloads and keys don't end up in logs or responses.
    errors = [{k: v for k, v in error.items() if k not in ("input", "ctx")} for error in exc.errors()]
    logger.warning("Request validation failed path=%s errors=%s", request.url.path, errors)
    return JSONResponse({"success": False, "error": errors}, status_code=422)


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error path=%s error_type=%s", request.url.path, type(exc).__name__, exc_info=exc)
    return JSONResponse({"success": False, "error": "Internal server error"}, status_code=500)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    queue: JobQueue = app.state.queue
    requeued = queue.recover()
    logger.info("Queue ready (%d jobs re-queued, max concurrent %d)", requeued, queue.max_concurrent)
    yield
    await queue.shutdown()


def create_app(queue: Optional[JobQueue] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI app around a queue (built from settings if not given)."""
    if queue is None:
        queue = build_queue(settings or get_settings())
    if queue.notifier is None:
        queue.notifier = queue.worker.notifier = queue.pool.notifier = Notifier()

    app = FastAPI(title="inkqueue", version=__version__, lifespan=lifespan)
    app.state.queue = queue

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "inkqueue", "version": __version__, "timestamp": utcnow().isoformat()}

    app.include_router(tasks_router)
    app.include_router(admin_router)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(JobNotFoundError, _not_found)
    app.add_exception_handler(QueueClosedError, _queue_closed)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(Exception, _unhandled_error)
    return app
