"""API request/response schemas for notification endpoints."""

from pydantic import BaseModel, Field

from dealerhub.services.notification.models import NotificationCategory


class AnnouncementRequest(BaseModel):
    """Operator message sent to every end-user and guest device."""

    title: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=1, max_length=2000)
    type: NotificationCategory = NotificationCategory.GENERAL
    data: dict[str, str] = Field(default_factory=dict)


class DirectSendRequest(AnnouncementRequest):
    """Operator message sent to chosen users."""

    user_ids: list[str] = Field(min_length=1)


class DeviceTokenRequest(BaseModel):
    """Push registration token as issued by the device SDK."""

    fcm_token: str = Field(min_length=50, max_length=500)
    platform: str | None = Field(default=None, max_length=20)


class DispatchResponse(BaseModel):
    records: int
    sent: int
    failed: int
    invalid_targets_removed: int = 0
    unknown_recipients: list[str] = Field(default_factory=list)
    realtime_sessions: int = 0
    delivery_deferred: bool = False
    delivery_dropped: bool = False


class InboxRecordResponse(BaseModel):
    id: str
    recipient_id: str | None
    type: str
    title: str
    message: str
    data: dict
    is_read: bool
    created_at: str | None


class InboxPageResponse(BaseModel):
    notifications: list[InboxRecordResponse]
    total: int
    unread_count: int
    page: int
    limit: int
