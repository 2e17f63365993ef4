"""Inbox store accessor for operator alerts and end-user notifications.

Writes happen inside a caller-owned session so the dispatcher can persist a
whole recipient set in one transaction. Reads and read-flag updates open their
own session. Category, title, body and payload are never updated here.
"""

from dataclasses import dataclass

from sqlalchemy import delete, func, select, update

from dealerhub.common.errors import ForbiddenError, NotFoundError
from dealerhub.common.logging import logger
from dealerhub.common.metrics import inbox_records_written_total
from dealerhub.services.notification.models import AdminAlert, NotificationCategory, UserNotification


@dataclass
class InboxPage:
    items: list
    total: int
    unread_count: int
    page: int
    limit: int


def serialize_record(record: AdminAlert | UserNotification) -> dict:
    """Wire shape shared by the HTTP API and realtime events."""

    return {
        "id": record.id,
        "recipient_id": record.recipient_id,
        "type": record.category,
        "title": record.title,
        "message": record.body,
        "data": record.payload or {},
        "is_read": record.is_read,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


class InboxStore:
    """Create/read/acknowledge inbox records."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def add_admin_alert(
        self,
        db,
        category: NotificationCategory,
        title: str,
        body: str,
        payload: dict | None = None,
    ) -> AdminAlert:
        alert = AdminAlert(
            recipient_id=None,
            category=NotificationCategory(category).value,
            title=title,
            body=body,
            payload=dict(payload or {}),
            is_read=False,
        )
        db.add(alert)
        inbox_records_written_total.labels(flavor="admin").inc()
        return alert

    def add_user_notifications(
        self,
        db,
        recipient_ids: list[str],
        category: NotificationCategory,
        title: str,
        body: str,
        payload: dict | None = None,
    ) -> list[UserNotification]:
        records = [
            UserNotification(
                recipient_id=recipient_id,
                category=NotificationCategory(category).value,
                title=title,
                body=body,
                payload=dict(payload or {}),
                is_read=False,
            )
            for recipient_id in recipient_ids
        ]
        db.add_all(records)
        inbox_records_written_total.labels(flavor="user").inc(len(records))
        return records

    def _page(self, db, model, where, unread_where, page: int, limit: int) -> InboxPage:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        items = (
            db.execute(
                select(model)
                .where(*where)
                .order_by(model.created_at.desc(), model.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        total = db.execute(select(func.count()).select_from(model).where(*where)).scalar_one()
        unread = db.execute(select(func.count()).select_from(model).where(*unread_where)).scalar_one()
        return InboxPage(items=list(items), total=total, unread_count=unread, page=page, limit=limit)

    def list_user_notifications(
        self, user_id: str, page: int = 1, limit: int = 20, unread_only: bool = False
    ) -> InboxPage:
        where = [UserNotification.recipient_id == user_id]
        if unread_only:
            where.append(UserNotification.is_read.is_(False))
        unread_where = [UserNotification.recipient_id == user_id, UserNotification.is_read.is_(False)]
        with self.session_factory() as db:
            return self._page(db, UserNotification, where, unread_where, page, limit)

    def _owned_notification(self, db, notification_id: str, user_id: str) -> UserNotification:
        notification = db.get(UserNotification, notification_id)
        if notification is None:
            raise NotFoundError("Notification")
        if notification.recipient_id != user_id:
            raise ForbiddenError("You do not have access to this notification")
        return notification

    def mark_user_notification_read(self, notification_id: str, user_id: str) -> UserNotification:
        with self.session_factory() as db:
            notification = self._owned_notification(db, notification_id, user_id)
            notification.is_read = True
            db.commit()
            return notification

    def mark_all_user_notifications_read(self, user_id: str) -> int:
        with self.session_factory() as db:
            result = db.execute(
                update(UserNotification)
                .where(UserNotification.recipient_id == user_id, UserNotification.is_read.is_(False))
                .values(is_read=True)
            )
            db.commit()
            return result.rowcount

    def delete_user_notification(self, notification_id: str, user_id: str) -> None:
        with self.session_factory() as db:
            self._owned_notification(db, notification_id, user_id)
            db.execute(delete(UserNotification).where(UserNotification.id == notification_id))
            db.commit()
        logger.info("notification deleted notification_id=%s", notification_id)

    def list_admin_alerts(self, page: int = 1, limit: int = 20, unread_only: bool = False) -> InboxPage:
        where = [AdminAlert.is_read.is_(False)] if unread_only else []
        with self.session_factory() as db:
            return self._page(db, AdminAlert, where, [AdminAlert.is_read.is_(False)], page, limit)

    def admin_unread_count(self) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(func.count()).select_from(AdminAlert).where(AdminAlert.is_read.is_(False))
            ).scalar_one()

    def mark_admin_alert_read(self, alert_id: str) -> AdminAlert:
        with self.session_factory() as db:
            alert = db.get(AdminAlert, alert_id)
            if alert is None:
                raise NotFoundError("Admin alert")
            alert.is_read = True
            db.commit()
            return alert

    def mark_all_admin_alerts_read(self) -> int:
        with self.session_factory() as db:
            result = db.execute(update(AdminAlert).where(AdminAlert.is_read.is_(False)).values(is_read=True))
            db.commit()
            return result.rowcount
