from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request

from app.schemas import NotificationFilters, NotificationPriority, NotificationType
from app.services.notification_store import NotificationStore

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _store(request: Request) -> NotificationStore:
    return request.app.state.notification_store


@router.get("")
async def list_notifications(
    request: Request,
    notification_type: NotificationType | None = Query(None, alias="type"),
    priority: NotificationPriority | None = None,
    is_read: bool | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = Query(50, ge=1, le=500),
):
    store = _store(request)
    filters = NotificationFilters(
        type=notification_type,
        priority=priority,
        is_read=is_read,
        date_from=date_from,
        date_to=date_to,
    )
    items = store.list(filters)[:limit]
    return {
        "notifications": [item.model_dump(mode="json") for item in items],
        "stats": store.stats().model_dump(),
    }


@router.get("/stats")
async def notification_stats(request: Request):
    return _store(request).stats().model_dump()


@router.post("/read-all")
async def mark_all_read(request: Request):
    changed = _store(request).mark_all_as_read()
    return {"updated": changed}


@router.post("/refresh")
async def refresh_notifications(request: Request):
    poller = getattr(request.app.state, "poller", None)
    if poller is None:
        raise HTTPException(status_code=503, detail="Alert polling is disabled")
    ran = await poller.force_refresh()
    return {
        "refreshed": ran,
        "cache": poller.get_cache_stats().model_dump(mode="json"),
        "stats": _store(request).stats().model_dump(),
    }


@router.post("/{notification_id}/read")
async def mark_read(notification_id: str, request: Request):
    if not _store(request).mark_as_read(notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"id": notification_id, "is_read": True}


@router.delete("/{notification_id}")
async def delete_notification(notification_id: str, request: Request):
    if not _store(request).delete(notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"id": notification_id, "deleted": True}


@router.delete("")
async def clear_notifications(request: Request):
    removed = _store(request).clear_all()
    return {"deleted": removed}
