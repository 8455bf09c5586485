from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from itertools import count

import sqlalchemy as sa
from sqlalchemy.orm import Session

from freeride.models.free_days import FreeDaysBeneficiary
from freeride.models.user import Rider
from freeride.services.free_days import activate_beneficiary, add_manual_beneficiary
from freeride.services.free_days_rules import create_rule

UTC = timezone.utc
_seq = count(1)


@dataclass
class FrozenClock:
    now: datetime = field(default_factory=lambda: datetime(2026, 3, 2, 8, 0, tzinfo=UTC))

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def at(day: int, hour: int, minute: int = 0, month: int = 3) -> datetime:
    return datetime(2026, month, day, hour, minute, tzinfo=UTC)


def make_rider(db: Session, *, role: str = "USER", registered_at: datetime | None = None, **fields) -> Rider:
    n = next(_seq)
    rider = Rider(
        first_name=fields.pop("first_name", f"Rider{n}"),
        last_name=fields.pop("last_name", "Test"),
        email=fields.pop("email", f"rider{n}@example.com"),
        phone=fields.pop("phone", f"+2250700{n:06d}"),
        role=role,
        **fields,
    )
    if registered_at is not None:
        rider.created_at = registered_at
    db.add(rider)
    db.flush()
    return rider


def make_rule(db: Session, **data):
    payload = {"name": data.pop("name", f"Promo {next(_seq)}"), "number_of_days": data.pop("number_of_days", 3)}
    payload.update(data)
    return create_rule(db, payload)


def grant_active(db: Session, rule, rider) -> FreeDaysBeneficiary:
    beneficiary = add_manual_beneficiary(db, rule.id, rider.id)
    return activate_beneficiary(db, beneficiary.id, rider.id)


def beneficiary_count(db: Session, rule_id) -> int:
    return db.scalar(
        sa.select(sa.func.count(FreeDaysBeneficiary.id)).where(FreeDaysBeneficiary.rule_id == rule_id)
    )
