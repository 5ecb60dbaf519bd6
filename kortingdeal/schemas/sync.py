from datetime import datetime
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kortingdeal.settings import SELECTION_POLICIES


class SyncStartRequest(BaseModel):
    kind: str = Field(default="manual", pattern="^(manual|scheduled)$")
    selection_policy: Optional[str] = None

    @field_validator("selection_policy")
    @classmethod
    def validate_policy(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if v not in SELECTION_POLICIES:
            raise ValueError(f"selection_policy must be one of {', '.join(SELECTION_POLICIES)}")
        return v


class SyncRunResponse(BaseModel):
    id: uuid.UUID
    kind: str
    status: str
    stage: str
    stage_message: Optional[str] = None
    estimated_remaining: Optional[str] = None
    selection_policy: str
    total_products: int
    processed_products: int
    current_batch: int
    total_batches: int
    products_added: int
    products_updated: int
    products_removed: int
    failed_batches: int
    cancel_requested: bool
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class FeedSettingsResponse(BaseModel):
    feed_url: Optional[str] = None
    seo_title_template: Optional[str] = None
    sync_enabled: bool = True
    sync_interval_hours: int = 24
    last_sync_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class FeedSettingsUpdate(BaseModel):
    feed_url: Optional[str] = None
    seo_title_template: Optional[str] = None
    sync_enabled: Optional[bool] = None
    sync_interval_hours: Optional[int] = Field(default=None, ge=1, le=168)

    @field_validator("feed_url")
    @classmethod
    def validate_feed_url(cls, v: Optional[str]) -> Optional[str]:
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("feed_url must be an http(s) URL")
        return v
