"""Notification service API, operator websocket and background workers.

Wires the inbox store, device registry, push gateway, realtime registry,
dispatcher, reminder scheduler and event triggers once per process.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from time import perf_counter

import redis
from fastapi import FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect, status

from dealerhub.common.config import settings
from dealerhub.common.db import SessionLocal
from dealerhub.common.errors import AuthError, ForbiddenError, NotFoundError, NotificationError
from dealerhub.common.identity import IdentityVerifier, Principal, bearer_token
from dealerhub.common.logging import bound, configure_logging, logger, principal_id_ctx
from dealerhub.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from dealerhub.common.ratelimit import TokenBucket
from dealerhub.common.startup import log_startup_config
from dealerhub.common.tasks import BackgroundTaskQueue
from dealerhub.common.tracing import instrument_app, setup_tracing
from dealerhub.services.notification.devices import DeviceRegistry, token_prefix
from dealerhub.services.notification.dispatcher import NotificationDispatcher
from dealerhub.services.notification.gateway import DeliveryGateway, FirebasePushProvider
from dealerhub.services.notification.inbox import InboxPage, InboxStore, serialize_record
from dealerhub.services.notification.notices import Announcement
from dealerhub.services.notification.realtime import RealtimeSession, RealtimeSessionRegistry
from dealerhub.services.notification.reminders import ReminderScheduler
from dealerhub.services.notification.schemas import (
    AnnouncementRequest,
    DeviceTokenRequest,
    DirectSendRequest,
    DispatchResponse,
    InboxPageResponse,
    InboxRecordResponse,
)
from dealerhub.services.notification.triggers import EventTriggers

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "jwt_secret",
        "firebase_project_id",
        "push_batch_size",
        "reminder_offsets_hours",
        "reminder_sweep_interval_seconds",
        "reminder_window_seconds",
        "kafka_consumers_enabled",
    ],
)

verifier = IdentityVerifier()
inbox = InboxStore(SessionLocal)
devices = DeviceRegistry(SessionLocal)
gateway = DeliveryGateway(FirebasePushProvider.from_settings(), batch_size=settings.push_batch_size)
registry = RealtimeSessionRegistry(verifier, send_timeout=settings.realtime_send_timeout_seconds)
queue = BackgroundTaskQueue(maxsize=settings.delivery_queue_size, workers=settings.delivery_workers)
dispatcher = NotificationDispatcher(SessionLocal, inbox, devices, gateway, registry, queue)
scheduler = ReminderScheduler(SessionLocal, dispatcher)
triggers = EventTriggers(SessionLocal, dispatcher, scheduler, service_name=settings.service_name)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
guest_limiter = TokenBucket(rdb, settings.guest_registrations_per_minute, prefix="tokenbucket:guest-device")


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run delivery workers, reminder tickers and event consumers with app lifecycle."""

    await queue.start()
    tasks = [
        asyncio.create_task(scheduler.run_sweeps()),
        asyncio.create_task(scheduler.run_cleanups()),
    ]
    if settings.kafka_consumers_enabled:
        tasks.append(asyncio.create_task(triggers.start_consumers()))
    yield
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await queue.stop(drain_timeout=settings.delivery_drain_timeout_seconds)
    await registry.flush()


app = FastAPI(title="Dealerhub Notification Service", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def require_principal(authorization: str | None) -> Principal:
    """Resolve the bearer token or reject with 401."""

    try:
        principal = verifier.verify(bearer_token(authorization))
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    principal_id_ctx.set(principal.principal_id)
    return principal


def require_operator(authorization: str | None) -> Principal:
    principal = require_principal(authorization)
    if not principal.is_operator:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal


def _http_error(exc: NotificationError) -> HTTPException:
    """Map domain errors to HTTP status codes."""

    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, AuthError):
        return HTTPException(status_code=401, detail=str(exc))
    return HTTPException(status_code=503, detail=str(exc))


def _page_response(page: InboxPage) -> InboxPageResponse:
    return InboxPageResponse(
        notifications=[InboxRecordResponse(**serialize_record(item)) for item in page.items],
        total=page.total,
        unread_count=page.unread_count,
        page=page.page,
        limit=page.limit,
    )


@app.get("/notifications", response_model=InboxPageResponse)
def list_notifications(
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    authorization: str | None = Header(default=None),
):
    """Current user's inbox, newest first."""

    principal = require_principal(authorization)
    return _page_response(inbox.list_user_notifications(principal.principal_id, page, limit, unread_only))


@app.put("/notifications/read-all")
def mark_all_notifications_read(authorization: str | None = Header(default=None)):
    principal = require_principal(authorization)
    count = inbox.mark_all_user_notifications_read(principal.principal_id)
    return {"count": count}


@app.put("/notifications/{notification_id}/read", response_model=InboxRecordResponse)
def mark_notification_read(notification_id: str, authorization: str | None = Header(default=None)):
    principal = require_principal(authorization)
    try:
        record = inbox.mark_user_notification_read(notification_id, principal.principal_id)
    except NotificationError as exc:
        raise _http_error(exc) from exc
    return InboxRecordResponse(**serialize_record(record))


@app.delete("/notifications/{notification_id}", status_code=204)
def delete_notification(notification_id: str, authorization: str | None = Header(default=None)):
    principal = require_principal(authorization)
    try:
        inbox.delete_user_notification(notification_id, principal.principal_id)
    except NotificationError as exc:
        raise _http_error(exc) from exc


@app.put("/users/me/device-target")
def register_device_target(req: DeviceTokenRequest, authorization: str | None = Header(default=None)):
    """Point the signed-in user's push target at this device."""

    principal = require_principal(authorization)
    try:
        devices.register_for_principal(principal.principal_id, req.fcm_token, req.platform)
    except NotificationError as exc:
        raise _http_error(exc) from exc
    return {"ok": True}


@app.delete("/users/me/device-target")
def remove_device_target(authorization: str | None = Header(default=None)):
    """Sign-out: stop pushing to the user's device."""

    principal = require_principal(authorization)
    return {"removed": devices.remove_for_principal(principal.principal_id)}


@app.post("/device-token")
def register_guest_device(req: DeviceTokenRequest, request: Request):
    """Guest install registration (no auth) so broadcasts reach every device."""

    client_key = request.client.host if request.client else "unknown"
    if not guest_limiter.allow(client_key):
        raise HTTPException(status_code=429, detail="rate limit exceeded")
    devices.register_anonymous(req.fcm_token, req.platform)
    logger.info("guest device token registered token=%s", token_prefix(req.fcm_token))
    return {"ok": True}


@app.get("/admin/alerts", response_model=InboxPageResponse)
def list_admin_alerts(
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    authorization: str | None = Header(default=None),
):
    require_operator(authorization)
    return _page_response(inbox.list_admin_alerts(page, limit, unread_only))


@app.get("/admin/alerts/unread-count")
def admin_unread_count(authorization: str | None = Header(default=None)):
    require_operator(authorization)
    return {"unread_count": inbox.admin_unread_count()}


@app.put("/admin/alerts/read-all")
def mark_all_admin_alerts_read(authorization: str | None = Header(default=None)):
    require_operator(authorization)
    return {"count": inbox.mark_all_admin_alerts_read()}


@app.put("/admin/alerts/{alert_id}/read", response_model=InboxRecordResponse)
def mark_admin_alert_read(alert_id: str, authorization: str | None = Header(default=None)):
    require_operator(authorization)
    try:
        alert = inbox.mark_admin_alert_read(alert_id)
    except NotificationError as exc:
        raise _http_error(exc) from exc
    return InboxRecordResponse(**serialize_record(alert))


@app.post("/admin/notifications/broadcast", response_model=DispatchResponse)
async def broadcast_notification(req: AnnouncementRequest, authorization: str | None = Header(default=None)):
    """Send to all active users and guest devices; counts reflect actual push outcomes."""

    require_operator(authorization)
    notice = Announcement(title=req.title, body=req.body, category=req.type, data=req.data)
    try:
        result = await dispatcher.publish(notice, await_delivery=True)
    except NotificationError as exc:
        raise _http_error(exc) from exc
    logger.info(
        "broadcast sent records=%s sent=%s failed=%s",
        result.records_written,
        result.push_succeeded,
        result.push_failed,
    )
    return DispatchResponse(**result.as_dict())


@app.post("/admin/notifications/send", response_model=DispatchResponse)
async def send_notification(req: DirectSendRequest, authorization: str | None = Header(default=None)):
    require_operator(authorization)
    notice = Announcement(title=req.title, body=req.body, category=req.type, data=req.data, user_ids=req.user_ids)
    try:
        result = await dispatcher.publish(notice, await_delivery=True)
    except NotificationError as exc:
        raise _http_error(exc) from exc
    return DispatchResponse(**result.as_dict())


@app.websocket("/ws/admin")
async def admin_socket(websocket: WebSocket, token: str | None = None):
    """Operator live feed: `admin:connected`, `admin:notification`, `admin:ping`/`admin:pong`."""

    credential = token or bearer_token(websocket.headers.get("authorization"))
    try:
        principal = registry.authenticate(credential)
    except AuthError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))
        return

    await websocket.accept()
    session = RealtimeSession(principal_id=principal.principal_id, role=principal.role.value, transport=websocket)
    registry.register(session)
    with bound(principal_id=principal.principal_id):
        try:
            await websocket.send_json(
                {
                    "event": "admin:connected",
                    "data": {"message": "Connected to admin notifications", "userId": principal.principal_id},
                }
            )
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    continue
                if isinstance(message, dict) and message.get("event") == "admin:ping":
                    await websocket.send_json({"event": "admin:pong"})
        except WebSocketDisconnect:
            pass
        finally:
            registry.unregister(principal.principal_id, session)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True, "push_enabled": gateway.enabled, "operators_connected": registry.connected_count()}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
