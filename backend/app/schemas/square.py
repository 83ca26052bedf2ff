"""
Square API Schemas
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field


# Webhook Schemas
class WebhookEventData(BaseModel):
    """Nested data block of a Square webhook event"""
    type: Optional[str] = None
    id: Optional[str] = None
    object: Dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """Square webhook envelope"""
    type: str
    event_id: str
    merchant_id: Optional[str] = None
    created_at: Optional[str] = None
    data: WebhookEventData = Field(default_factory=WebhookEventData)


class WebhookResponse(BaseModel):
    """Webhook handling result"""
    success: bool
    message: str


# Catalog Sync Schemas
class SyncRequest(BaseModel):
    """Manual catalog sync request"""
    reason: Optional[str] = None


class SyncResponse(BaseModel):
    """Response after queueing a catalog sync"""
    message: str
    task_id: str
    run_id: str


class SyncRunResponse(BaseModel):
    """One catalog sync run"""
    id: str
    trigger: str
    status: str
    total_items: int = 0
    synced_items: int = 0
    archived_items: int = 0
    error_count: int = 0
    errors: Optional[List[Dict[str, Any]]] = None
    error_message: Optional[str] = None
    task_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class SyncRunList(BaseModel):
    """List of catalog sync runs"""
    runs: List[SyncRunResponse]
    total: int
