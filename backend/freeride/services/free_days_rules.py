from __future__ import annotations

import logging
from uuid import UUID

import pydantic
import sqlalchemy as sa
from sqlalchemy.orm import Session

from freeride.core.clock import as_utc
from freeride.core.config import settings
from freeride.core.errors import NotFoundError, ValidationError
from freeride.models.free_days import FreeDaysBeneficiary, FreeDaysRule
from freeride.models.user import Rider
from freeride.schemas.free_days import (
    BeneficiaryWithRiderOut,
    FreeDaysRuleCreateIn,
    FreeDaysRuleDetailOut,
    FreeDaysRuleListItemOut,
    FreeDaysRuleOut,
    FreeDaysRuleUpdateIn,
    RiderBriefOut,
    check_rule_windows,
)
from freeride.services.activity import RULE_ENTITY, log_activity
from freeride.services.ids import as_uuid

logger = logging.getLogger(__name__)


def _parse(model: type[pydantic.BaseModel], data):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]) or "__root__", "message": err["msg"]}
            for err in exc.errors()
        ]
        detail = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        raise ValidationError(f"Invalid free days rule data ({detail})", errors=errors) from exc


def get_rule_row(db: Session, rule_id) -> FreeDaysRule:
    rule = db.get(FreeDaysRule, as_uuid(rule_id, "Free days rule"))
    if rule is None:
        raise NotFoundError("Free days rule", rule_id)
    return rule


def create_rule(db: Session, data, actor_user_id=None) -> FreeDaysRule:
    payload = _parse(FreeDaysRuleCreateIn, data)
    rule = FreeDaysRule(
        name=payload.name,
        description=payload.description,
        number_of_days=payload.number_of_days,
        target_type=payload.target_type,
        target_days_since_registration=payload.target_days_since_registration,
        target_min_spend=payload.target_min_spend,
        start_hour=payload.start_hour,
        end_hour=payload.end_hour,
        valid_from=payload.valid_from,
        valid_until=payload.valid_until,
        max_beneficiaries=payload.max_beneficiaries,
        current_beneficiaries=0,
        is_active=True,
    )
    db.add(rule)
    db.flush()
    log_activity(
        db,
        actor_user_id,
        "CREATE",
        RULE_ENTITY,
        rule.id,
        f"Created free days rule: {rule.name}",
        {"name": rule.name, "number_of_days": rule.number_of_days, "target_type": rule.target_type},
    )
    return rule


def list_rules(db: Session, include_inactive: bool = False) -> list[FreeDaysRuleListItemOut]:
    live_count = (
        sa.select(sa.func.count(FreeDaysBeneficiary.id))
        .where(FreeDaysBeneficiary.rule_id == FreeDaysRule.id)
        .correlate(FreeDaysRule)
        .scalar_subquery()
    )
    stmt = sa.select(FreeDaysRule, live_count.label("beneficiary_count"))
    if not include_inactive:
        stmt = stmt.where(FreeDaysRule.is_active.is_(True))
    stmt = stmt.order_by(FreeDaysRule.created_at.desc(), FreeDaysRule.name)

    out: list[FreeDaysRuleListItemOut] = []
    for rule, count in db.execute(stmt).all():
        item = FreeDaysRuleOut.model_validate(rule).model_dump()
        out.append(FreeDaysRuleListItemOut(**item, beneficiary_count=int(count or 0)))
    return out


def get_rule(db: Session, rule_id) -> FreeDaysRuleDetailOut:
    rule = get_rule_row(db, rule_id)
    rows = db.scalars(
        sa.select(FreeDaysBeneficiary)
        .where(FreeDaysBeneficiary.rule_id == rule.id)
        .order_by(FreeDaysBeneficiary.created_at, FreeDaysBeneficiary.id)
    ).all()
    beneficiaries = [BeneficiaryWithRiderOut.model_validate(b) for b in rows]
    item = FreeDaysRuleOut.model_validate(rule).model_dump()
    return FreeDaysRuleDetailOut(**item, beneficiaries=beneficiaries)


def _propagate_number_of_days(db: Session, rule_id: UUID, number_of_days: int) -> int:
    """
    Rewrite every grant of a rule against a new day count in a single statement.

    Days already used are kept: a grant that used at least the new count ends
    exhausted, otherwise its balance is the new count minus the used days and an
    exhausted grant is reactivated.
    """
    used = FreeDaysBeneficiary.days_granted - FreeDaysBeneficiary.days_remaining
    used_up = used >= number_of_days
    stmt = (
        sa.update(FreeDaysBeneficiary)
        .where(FreeDaysBeneficiary.rule_id == rule_id)
        .values(
            days_granted=number_of_days,
            days_remaining=sa.case((used_up, 0), else_=number_of_days - used),
            is_active=sa.case(
                (used_up, sa.false()),
                (FreeDaysBeneficiary.days_remaining <= 0, sa.true()),
                else_=FreeDaysBeneficiary.is_active,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount


def update_rule(db: Session, rule_id, patch, actor_user_id=None) -> FreeDaysRule:
    payload = _parse(FreeDaysRuleUpdateIn, patch)
    changes = payload.changes()
    rule = get_rule_row(db, rule_id)

    merged = {field: changes.get(field, getattr(rule, field)) for field in ("start_hour", "end_hour")}
    for field in ("valid_from", "valid_until"):
        merged[field] = as_utc(changes.get(field, getattr(rule, field)))
    try:
        check_rule_windows(**merged)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if "max_beneficiaries" in changes:
        cap = changes["max_beneficiaries"]
        if cap is not None and cap < rule.current_beneficiaries:
            raise ValidationError(
                f"max_beneficiaries cannot be lower than the {rule.current_beneficiaries} current beneficiaries"
            )

    for field, value in changes.items():
        setattr(rule, field, value)
    db.flush()

    if "number_of_days" in changes:
        touched = _propagate_number_of_days(db, rule.id, changes["number_of_days"])
        # The bulk statement bypasses the identity map.
        for beneficiary in db.scalars(
            sa.select(FreeDaysBeneficiary).where(FreeDaysBeneficiary.rule_id == rule.id)
        ).all():
            db.expire(beneficiary)
        logger.info(
            "Propagated number_of_days=%s to %s beneficiaries of rule %s",
            changes["number_of_days"],
            touched,
            rule.id,
        )

    log_activity(
        db,
        actor_user_id,
        "UPDATE",
        RULE_ENTITY,
        rule.id,
        "Updated free days rule",
        {"name": rule.name, "number_of_days": rule.number_of_days, "fields": sorted(changes)},
    )
    return rule


def delete_rule(db: Session, rule_id, actor_user_id=None) -> None:
    rule = get_rule_row(db, rule_id)
    rule_key = str(rule.id)
    name = rule.name
    db.delete(rule)
    db.flush()
    log_activity(db, actor_user_id, "DELETE", RULE_ENTITY, rule_key, f"Deleted free days rule: {name}", {})


def search_riders(db: Session, query: str, limit: int | None = None) -> list[RiderBriefOut]:
    term = (query or "").strip()
    if not term:
        raise ValidationError("A search term is required")
    pattern = f"%{term.lower()}%"
    stmt = (
        sa.select(Rider)
        .where(
            Rider.role == settings.FREE_DAYS_SWEEP_ROLE,
            sa.or_(
                sa.func.lower(Rider.first_name).like(pattern),
                sa.func.lower(Rider.last_name).like(pattern),
                sa.func.lower(Rider.email).like(pattern),
                Rider.phone.like(pattern),
            ),
        )
        .order_by(Rider.last_name, Rider.first_name, Rider.id)
        .limit(limit or settings.RIDER_SEARCH_LIMIT)
    )
    return [RiderBriefOut.model_validate(r) for r in db.scalars(stmt).all()]
