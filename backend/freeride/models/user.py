from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from freeride.core.clock import now_utc
from freeride.db.base import Base

class Rider(Base):
    __tablename__ = "riders"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    first_name: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    last_name: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    email: Mapped[str | None] = mapped_column(sa.Text, unique=True, nullable=True)
    phone: Mapped[str | None] = mapped_column(sa.Text, unique=True, nullable=True)
    role: Mapped[str] = mapped_column(sa.Text, nullable=False, default="USER", server_default="USER")
    # Registration time; the registration-days sweep keys off it.
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc, server_default=sa.func.now())

    __table_args__ = (
        sa.CheckConstraint("role in ('USER','ADMIN')", name="ck_rider_role"),
        sa.Index("ix_riders_role_created", "role", "created_at"),
    )
