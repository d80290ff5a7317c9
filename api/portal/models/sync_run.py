import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from portal.core.database import Base


class SyncRun(Base):
    """Audit record of one coordinator execution. Frozen once finished_at is set."""
    __tablename__ = "sync_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    trigger: Mapped[str] = mapped_column(String(20))              # manual | scheduled
    status: Mapped[str] = mapped_column(String(20), default="running")
    # running | completed | failed
    entity_ids: Mapped[list] = mapped_column(JSON, default=list)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # entity_id -> serialized EntityOutcome
    outcomes: Mapped[dict] = mapped_column(JSON, default=dict)
    accounts_touched: Mapped[int] = mapped_column(Integer, default=0)
    transactions_added: Mapped[int] = mapped_column(Integer, default=0)
    snapshots_written: Mapped[int] = mapped_column(Integer, default=0)
    entities_synced: Mapped[int] = mapped_column(Integer, default=0)
    entities_failed: Mapped[int] = mapped_column(Integer, default=0)
    alert_raised: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[str | None] = mapped_column(Text)
