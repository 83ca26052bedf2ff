"""
Catalog Sync Run Model - History of catalog reconciliation runs
"""
from sqlalchemy import Column, String, DateTime, Integer, Text, Enum, Uuid
from datetime import datetime
import uuid
import enum

from app.database import Base
from app.models.types import JSONType


class SyncTrigger(str, enum.Enum):
    """What started the run"""
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"


class SyncStatus(str, enum.Enum):
    """Run status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class CatalogSyncRun(Base):
    __tablename__ = "catalog_sync_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    trigger = Column(Enum(SyncTrigger, values_callable=lambda x: [e.value for e in x], native_enum=False, length=16), nullable=False, default=SyncTrigger.MANUAL)
    status = Column(Enum(SyncStatus, values_callable=lambda x: [e.value for e in x], native_enum=False, length=16), nullable=False, default=SyncStatus.PENDING)
    total_items = Column(Integer, default=0)
    synced_items = Column(Integer, default=0)
    archived_items = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    errors = Column(JSONType, nullable=True)  # [{square_id, name, error}]
    error_message = Column(Text, nullable=True)
    task_id = Column(String, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<CatalogSyncRun {self.id} ({self.status})>"
