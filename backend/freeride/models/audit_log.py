from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from freeride.core.clock import now_utc
from freeride.db.base import Base

class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    actor_user_id: Mapped[sa.Uuid | None] = mapped_column(sa.Uuid, sa.ForeignKey("riders.id", ondelete="SET NULL"), nullable=True)

    entity_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    action: Mapped[str] = mapped_column(sa.Text, nullable=False)
    description: Mapped[str] = mapped_column(sa.Text, nullable=False, default="", server_default="")
    data: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)

    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc, server_default=sa.func.now())

    __table_args__ = (
        sa.CheckConstraint("action in ('CREATE','UPDATE','DELETE')", name="ck_audit_action"),
        sa.Index("ix_audit_entity", "entity_type", "entity_id"),
        sa.Index("ix_audit_actor_created", "actor_user_id", "created_at"),
    )
