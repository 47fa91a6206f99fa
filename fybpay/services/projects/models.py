"""Business entities a payment can unlock."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from fybpay.common.db import Base


class User(Base):
    """Read-only view of accounts managed by the auth layer."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)


class Project(Base):
    """A student project; paid content stays locked until a payment succeeds."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    anonymous_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    topic: Mapped[str] = mapped_column(Text, default="")
    twist: Mapped[str | None] = mapped_column(Text, nullable=True)
    mode: Mapped[str] = mapped_column(String, default="DIY")
    status: Mapped[str] = mapped_column(String, default="OUTLINE_GENERATED")
    is_unlocked: Mapped[bool] = mapped_column(Boolean, default=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # One project per converted lead; the unique index turns a racing second
    # synthesis into an IntegrityError instead of a duplicate row.
    source_lead_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Lead(Base):
    """Captured project idea that may be sold before a project exists."""

    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    anonymous_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    topic: Mapped[str] = mapped_column(Text)
    twist: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="NEW", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
