from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from freeride.core.clock import as_utc, now_utc
from freeride.db.base import Base


class FreeDaysRule(Base):
    __tablename__ = "free_days_rules"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    description: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    number_of_days: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    target_type: Mapped[str] = mapped_column(sa.Text, nullable=False, default="NEW_USERS", server_default="NEW_USERS")
    target_days_since_registration: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    target_min_spend: Mapped[Decimal | None] = mapped_column(sa.Numeric(12, 2), nullable=True)

    # Free usage window in operating-zone hours: [start_hour, end_hour)
    start_hour: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    end_hour: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)

    valid_from: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    max_beneficiaries: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    current_beneficiaries: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default="0")

    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True, server_default=sa.true())
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc, server_default=sa.func.now())
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc, server_default=sa.func.now()
    )

    beneficiaries: Mapped[list[FreeDaysBeneficiary]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        sa.CheckConstraint(
            "target_type IN ('NEW_USERS','EXISTING_BY_DAYS','EXISTING_BY_SPEND','MANUAL')",
            name="ck_free_days_rules_target_type",
        ),
        sa.CheckConstraint("number_of_days >= 1", name="ck_free_days_rules_days"),
        sa.CheckConstraint("start_hour IS NULL OR (start_hour >= 0 AND start_hour < 24)", name="ck_free_days_rules_start_hour"),
        sa.CheckConstraint("end_hour IS NULL OR (end_hour >= 0 AND end_hour < 24)", name="ck_free_days_rules_end_hour"),
        sa.CheckConstraint(
            "max_beneficiaries IS NULL OR current_beneficiaries <= max_beneficiaries",
            name="ck_free_days_rules_capacity",
        ),
        sa.CheckConstraint("current_beneficiaries >= 0", name="ck_free_days_rules_counter"),
        sa.Index("ix_free_days_rules_active_target", "is_active", "target_type"),
    )

    @property
    def has_window(self) -> bool:
        return self.start_hour is not None or self.end_hour is not None

    def is_valid_at(self, when: datetime) -> bool:
        valid_from = as_utc(self.valid_from)
        valid_until = as_utc(self.valid_until)
        if valid_from is not None and valid_from > when:
            return False
        if valid_until is not None and valid_until < when:
            return False
        return True


@dataclass(frozen=True)
class Pending:
    """Granted but not yet activated by the rider."""

    is_pending = True


@dataclass(frozen=True)
class Active:
    start_date: datetime
    expires_at: datetime

    is_pending = False


BeneficiaryState = Pending | Active


class FreeDaysBeneficiary(Base):
    __tablename__ = "free_days_beneficiaries"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    rule_id: Mapped[sa.Uuid] = mapped_column(
        sa.Uuid, sa.ForeignKey("free_days_rules.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("riders.id", ondelete="CASCADE"), nullable=False)

    days_granted: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    days_remaining: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    # Both NULL while the grant is pending activation.
    start_date: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True, server_default=sa.true())
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc, server_default=sa.func.now())
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=now_utc, onupdate=now_utc, server_default=sa.func.now()
    )

    rule: Mapped[FreeDaysRule] = relationship(back_populates="beneficiaries")
    rider = relationship("Rider", lazy="joined")

    __table_args__ = (
        sa.UniqueConstraint("rule_id", "user_id", name="uq_free_days_beneficiaries_rule_user"),
        sa.CheckConstraint(
            "days_remaining >= 0 AND days_remaining <= days_granted",
            name="ck_free_days_beneficiaries_balance",
        ),
        sa.CheckConstraint(
            "(start_date IS NULL AND expires_at IS NULL) OR (start_date IS NOT NULL AND expires_at IS NOT NULL)",
            name="ck_free_days_beneficiaries_state",
        ),
        sa.Index("ix_free_days_beneficiaries_user_active_exp", "user_id", "is_active", "expires_at"),
    )

    @property
    def state(self) -> BeneficiaryState:
        if self.start_date is None or self.expires_at is None:
            return Pending()
        return Active(start_date=as_utc(self.start_date), expires_at=as_utc(self.expires_at))

    @property
    def days_used(self) -> int:
        return self.days_granted - self.days_remaining

    @property
    def status(self) -> str:
        if not self.is_active or self.days_remaining <= 0:
            return "exhausted"
        return "pending" if self.state.is_pending else "active"
