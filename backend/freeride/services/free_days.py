from __future__ import annotations

import logging
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from freeride.core.clock import now_utc, ride_time_utc
from freeride.core.config import settings
from freeride.core.errors import AlreadyActiveError, CapacityExceededError, ConflictError, NotFoundError
from freeride.models.free_days import FreeDaysBeneficiary, FreeDaysRule
from freeride.models.user import Rider
from freeride.schemas.free_days import FreeDayApplicationOut, RegistrationSweepOut, UserFreeDayOut
from freeride.services.activity import BENEFICIARY_ENTITY, log_activity
from freeride.services.free_days_rules import get_rule_row
from freeride.services.free_window import compute_overtime, window_contains
from freeride.services.ids import as_uuid

logger = logging.getLogger(__name__)

NEW_USERS = "NEW_USERS"
EXISTING_BY_DAYS = "EXISTING_BY_DAYS"


def _find_beneficiary(db: Session, rule_id, user_id) -> FreeDaysBeneficiary | None:
    return db.scalars(
        sa.select(FreeDaysBeneficiary).where(
            FreeDaysBeneficiary.rule_id == rule_id,
            FreeDaysBeneficiary.user_id == user_id,
        )
    ).first()


def _rider_id(db: Session, user_id):
    uid = as_uuid(user_id, "Rider")
    if db.get(Rider, uid) is None:
        raise NotFoundError("Rider", user_id)
    return uid


def _reserve_slot(db: Session, rule: FreeDaysRule) -> bool:
    """Increment the rule counter only while it stays within max_beneficiaries."""
    stmt = (
        sa.update(FreeDaysRule)
        .where(
            FreeDaysRule.id == rule.id,
            sa.or_(
                FreeDaysRule.max_beneficiaries.is_(None),
                FreeDaysRule.current_beneficiaries < FreeDaysRule.max_beneficiaries,
            ),
        )
        .values(current_beneficiaries=FreeDaysRule.current_beneficiaries + 1)
        .execution_options(synchronize_session=False)
    )
    reserved = db.execute(stmt).rowcount == 1
    db.expire(rule, ["current_beneficiaries"])
    return reserved


def _release_slot(db: Session, rule_id) -> None:
    db.execute(
        sa.update(FreeDaysRule)
        .where(FreeDaysRule.id == rule_id, FreeDaysRule.current_beneficiaries > 0)
        .values(current_beneficiaries=FreeDaysRule.current_beneficiaries - 1)
        .execution_options(synchronize_session=False)
    )
    rule = db.get(FreeDaysRule, rule_id)
    if rule is not None:
        db.expire(rule, ["current_beneficiaries"])


def _insert_pending(db: Session, rule: FreeDaysRule, user_id) -> FreeDaysBeneficiary:
    beneficiary = FreeDaysBeneficiary(
        rule_id=rule.id,
        user_id=user_id,
        days_granted=rule.number_of_days,
        days_remaining=rule.number_of_days,
        start_date=None,
        expires_at=None,
        is_active=True,
    )
    db.add(beneficiary)
    db.flush()
    return beneficiary


def _grant(db: Session, rule: FreeDaysRule, user_id) -> FreeDaysBeneficiary | None:
    """Reserve a slot and insert a pending grant; None when the rule is full."""
    if not _reserve_slot(db, rule):
        return None
    return _insert_pending(db, rule, user_id)


def add_manual_beneficiary(db: Session, rule_id, user_id, actor_user_id=None) -> FreeDaysBeneficiary:
    rule = get_rule_row(db, rule_id)
    user_uuid = _rider_id(db, user_id)
    if _find_beneficiary(db, rule.id, user_uuid) is not None:
        raise ConflictError(rule.id, user_uuid)

    try:
        beneficiary = _grant(db, rule, user_uuid)
    except IntegrityError as exc:
        # Concurrent grant for the same pair; the caller must roll back the unit of work.
        raise ConflictError(rule.id, user_uuid) from exc
    if beneficiary is None:
        raise CapacityExceededError(rule.id, rule.max_beneficiaries)

    log_activity(
        db,
        actor_user_id,
        "CREATE",
        BENEFICIARY_ENTITY,
        beneficiary.id,
        "Added manual beneficiary to free days rule",
        {"rule_id": str(rule.id), "user_id": str(user_uuid)},
    )
    return beneficiary


def remove_beneficiary(db: Session, rule_id, user_id, actor_user_id=None) -> None:
    rule_uuid = as_uuid(rule_id, "Free days rule")
    user_uuid = as_uuid(user_id, "Rider")
    # The counter moves only for the statement that actually deleted the row.
    deleted = db.execute(
        sa.delete(FreeDaysBeneficiary)
        .where(FreeDaysBeneficiary.rule_id == rule_uuid, FreeDaysBeneficiary.user_id == user_uuid)
        .execution_options(synchronize_session="evaluate")
    ).rowcount
    if deleted != 1:
        raise NotFoundError("Free days beneficiary", f"{rule_uuid}/{user_uuid}")

    _release_slot(db, rule_uuid)
    log_activity(
        db,
        actor_user_id,
        "DELETE",
        BENEFICIARY_ENTITY,
        f"{rule_uuid}_{user_uuid}",
        "Removed beneficiary from free days rule",
        {"rule_id": str(rule_uuid), "user_id": str(user_uuid)},
    )


def _sweep_grant(db: Session, rule: FreeDaysRule, user_id) -> tuple[FreeDaysBeneficiary | None, bool]:
    """
    Grant for a sweep; ineligibility is a silent skip.

    Returns the new grant (or None) and whether the rule ran out of capacity.
    Any existing row for the pair counts as already granted, since the pair is unique.
    """
    if _find_beneficiary(db, rule.id, user_id) is not None:
        logger.debug("Rider %s already holds rule %s", user_id, rule.id)
        return None, False
    beneficiary = _grant(db, rule, user_id)
    if beneficiary is None:
        logger.debug("Rule %s reached max_beneficiaries=%s", rule.id, rule.max_beneficiaries)
        return None, True
    log_activity(
        db,
        None,
        "CREATE",
        BENEFICIARY_ENTITY,
        beneficiary.id,
        f"Granted free days rule {rule.name} automatically",
        {"rule_id": str(rule.id), "user_id": str(user_id), "target_type": rule.target_type},
    )
    return beneficiary, False


def _active_rules(db: Session, target_type: str, now: datetime) -> list[FreeDaysRule]:
    rules = db.scalars(
        sa.select(FreeDaysRule)
        .where(FreeDaysRule.is_active.is_(True), FreeDaysRule.target_type == target_type)
        .order_by(FreeDaysRule.created_at, FreeDaysRule.id)
    ).all()
    valid = [rule for rule in rules if rule.is_valid_at(now)]
    if len(valid) < len(rules):
        logger.debug("%s %s rules outside their validity window", len(rules) - len(valid), target_type)
    return valid


def apply_auto_rules_to_new_user(db: Session, user_id) -> list[FreeDaysBeneficiary]:
    user_uuid = _rider_id(db, user_id)
    now = now_utc()
    granted: list[FreeDaysBeneficiary] = []
    for rule in _active_rules(db, NEW_USERS, now):
        beneficiary, _ = _sweep_grant(db, rule, user_uuid)
        if beneficiary is not None:
            granted.append(beneficiary)
    if granted:
        logger.info("Granted %s new-user free days rules to rider %s", len(granted), user_uuid)
    return granted


def apply_rules_by_registration_days(db: Session) -> RegistrationSweepOut:
    now = now_utc()
    summary = RegistrationSweepOut()
    for rule in _active_rules(db, EXISTING_BY_DAYS, now):
        if rule.target_days_since_registration is None:
            continue
        summary.rules += 1
        cutoff = now - timedelta(days=rule.target_days_since_registration)
        rider_ids = db.scalars(
            sa.select(Rider.id)
            .where(Rider.created_at <= cutoff, Rider.role == settings.FREE_DAYS_SWEEP_ROLE)
            .order_by(Rider.created_at, Rider.id)
        ).all()
        for rider_id in rider_ids:
            beneficiary, full = _sweep_grant(db, rule, rider_id)
            if full:
                summary.skipped += 1
                break
            if beneficiary is None:
                summary.skipped += 1
            else:
                summary.granted += 1
    logger.info(
        "Registration-days sweep: rules=%s granted=%s skipped=%s",
        summary.rules,
        summary.granted,
        summary.skipped,
    )
    return summary


def activate_beneficiary(db: Session, beneficiary_id, user_id) -> FreeDaysBeneficiary:
    bid = as_uuid(beneficiary_id, "Free days beneficiary")
    uid = as_uuid(user_id, "Rider")
    beneficiary = db.scalars(
        sa.select(FreeDaysBeneficiary).where(
            FreeDaysBeneficiary.id == bid,
            FreeDaysBeneficiary.user_id == uid,
            FreeDaysBeneficiary.is_active.is_(True),
        )
    ).first()
    if beneficiary is None:
        raise NotFoundError("Free days beneficiary", beneficiary_id)
    if not beneficiary.state.is_pending:
        raise AlreadyActiveError(bid)

    now = now_utc()
    beneficiary.start_date = now
    beneficiary.expires_at = now + timedelta(days=beneficiary.days_granted)
    db.flush()
    log_activity(
        db,
        uid,
        "UPDATE",
        BENEFICIARY_ENTITY,
        bid,
        "Activated free days grant",
        {"rule_id": str(beneficiary.rule_id), "expires_at": beneficiary.expires_at.isoformat()},
    )
    return beneficiary


def _consume_one_day(db: Session, beneficiary: FreeDaysBeneficiary) -> bool:
    stmt = (
        sa.update(FreeDaysBeneficiary)
        .where(
            FreeDaysBeneficiary.id == beneficiary.id,
            FreeDaysBeneficiary.is_active.is_(True),
            FreeDaysBeneficiary.days_remaining > 0,
        )
        .values(
            days_remaining=FreeDaysBeneficiary.days_remaining - 1,
            is_active=sa.case((FreeDaysBeneficiary.days_remaining <= 1, sa.false()), else_=sa.true()),
        )
        .execution_options(synchronize_session=False)
    )
    consumed = db.execute(stmt).rowcount == 1
    db.expire(beneficiary, ["days_remaining", "is_active", "updated_at"])
    return consumed


def apply_free_day(
    db: Session,
    user_id,
    ride_start: datetime,
    ride_end: datetime,
    hourly_rate: float,
) -> FreeDayApplicationOut:
    """
    Apply one free day to a completed ride.

    Picks the grant expiring soonest whose rule window covers the ride's start
    hour, bills whole started hours past the window end as overtime and takes
    exactly one day off the grant. A ride with no usable grant is not an error.
    """
    uid = as_uuid(user_id, "Rider")
    start_utc = ride_time_utc(ride_start)
    end_utc = ride_time_utc(ride_end)
    candidates = db.scalars(
        sa.select(FreeDaysBeneficiary)
        .join(FreeDaysRule, FreeDaysRule.id == FreeDaysBeneficiary.rule_id)
        .where(
            FreeDaysBeneficiary.user_id == uid,
            FreeDaysBeneficiary.is_active.is_(True),
            FreeDaysBeneficiary.days_remaining > 0,
            FreeDaysBeneficiary.start_date.is_not(None),
            FreeDaysBeneficiary.start_date <= end_utc,
            FreeDaysBeneficiary.expires_at > start_utc,
        )
        .order_by(FreeDaysBeneficiary.expires_at, FreeDaysBeneficiary.created_at, FreeDaysBeneficiary.id)
    ).all()

    for beneficiary in candidates:
        rule = beneficiary.rule
        if not window_contains(rule.start_hour, rule.end_hour, ride_start):
            continue
        overtime = compute_overtime(rule.end_hour, ride_start, ride_end, hourly_rate)
        if not _consume_one_day(db, beneficiary):
            # Consumed by a concurrent ride; try the next grant.
            continue
        logger.info(
            "Applied free day of rule %s to rider %s (remaining=%s, overtime_hours=%s)",
            rule.id,
            uid,
            beneficiary.days_remaining,
            overtime.overtime_hours,
        )
        return FreeDayApplicationOut(applied=True, overtime_cost=overtime.overtime_cost, rule_name=rule.name)

    return FreeDayApplicationOut(applied=False, overtime_cost=0, rule_name="")


def get_user_free_days(db: Session, user_id) -> list[UserFreeDayOut]:
    uid = as_uuid(user_id, "Rider")
    now = now_utc()
    rows = db.scalars(
        sa.select(FreeDaysBeneficiary)
        .where(
            FreeDaysBeneficiary.user_id == uid,
            FreeDaysBeneficiary.is_active.is_(True),
            FreeDaysBeneficiary.days_remaining > 0,
            sa.or_(FreeDaysBeneficiary.expires_at.is_(None), FreeDaysBeneficiary.expires_at > now),
        )
        .order_by(
            FreeDaysBeneficiary.expires_at.is_(None),
            FreeDaysBeneficiary.expires_at,
            FreeDaysBeneficiary.created_at,
            FreeDaysBeneficiary.id,
        )
    ).all()
    return [UserFreeDayOut.model_validate(b) for b in rows]
