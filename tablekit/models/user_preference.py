import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tablekit.db import Base


class UserPreference(Base):
    """Durable preference blob, one row per identity.

    Table preferences live under namespaced keys (``datatable:<entity>``)
    inside ``preferences`` so independent tables never overwrite each other.
    """

    __tablename__ = "user_preferences"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    identity_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    preferences: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
