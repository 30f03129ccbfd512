"""Notification models for runguard."""

from typing import List, Optional

from pydantic import BaseModel, Field


class NotificationConfig(BaseModel):
    """Configuration for outbound event notifications."""

    enabled: bool = Field(default=True, description="Enable/disable notifications")

    # Webhook settings
    webhook_url: Optional[str] = Field(default=None, description="Webhook URL for notifications")
    webhook_enabled: bool = Field(default=False, description="Enable webhook notifications")
    webhook_timeout_seconds: float = Field(default=10.0, description="Per-request timeout")
    webhook_token: Optional[str] = Field(default=None, description="Bearer token sent with webhook requests")

    # Event filter; None forwards every event type
    event_types: Optional[List[str]] = Field(default=None, description="Event types to forward")


class NotificationStatus(BaseModel):
    """Outcome of a single webhook delivery."""

    event_type: str = Field(description="Type of the delivered event")
    success: bool = Field(description="Whether delivery succeeded")
    status_code: Optional[int] = Field(default=None, description="HTTP status returned by the webhook")
    error: Optional[str] = Field(default=None, description="Error message if failed")
