"""Persisted business events."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from motolease.models.base import Base, IdMixin, TimestampMixin


class BusinessEvent(Base, IdMixin, TimestampMixin):
    """Record of one emitted business operation (accounting input)."""

    __tablename__ = "business_event"

    operation_id: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    actor: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="processing")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'completed', 'failed')",
            name="business_event_status_ck",
        ),
        Index("business_event_entity_idx", "entity_type", "entity_id"),
    )
