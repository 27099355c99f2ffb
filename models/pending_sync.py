# models/pending_sync.py
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

# v1 rows held records with the console's camelCase keys
SCHEMA_VERSION = 2


class SyncState(str, Enum):
    CREATED = "created"
    SYNCED = "synced"
    ABANDONED = "abandoned"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def entry_key(visit_id: int, patient_id: Optional[str]) -> str:
    return f"labtests_{visit_id}_{patient_id or 'unknown'}"


class PendingSyncEntry(SQLModel, table=True):
    __tablename__ = "pending_sync_entries"

    key: str = Field(primary_key=True)
    visit_id: int = Field(index=True)
    patient_id: str = ""
    records: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    state: SyncState = Field(default=SyncState.CREATED, index=True)
    sync_attempts: int = 0
    synced: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    schema_version: int = SCHEMA_VERSION

    def summary(self) -> dict:
        """Flat view used by the API and the operator console"""
        return {
            "key": self.key,
            "visit_id": self.visit_id,
            "patient_id": self.patient_id,
            "tests": [r.get("test_name", "") for r in self.records],
            "state": self.state.value if isinstance(self.state, SyncState) else self.state,
            "sync_attempts": self.sync_attempts,
            "synced": self.synced,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "last_error": self.last_error,
        }
