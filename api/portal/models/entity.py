from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from portal.core.database import Base


class BusinessEntity(Base):
    """A business unit, seeded from configuration. Only ``status`` changes at runtime."""
    __tablename__ = "business_entities"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)  # lowercase slug
    name: Mapped[str] = mapped_column(String(100))
    legal_name: Mapped[str] = mapped_column(String(255))
    entity_type: Mapped[str] = mapped_column(String(20))
    # parent | investment | operating
    status: Mapped[str] = mapped_column(String(20), default="active")
    # active | building | planned
    credential_ref: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
