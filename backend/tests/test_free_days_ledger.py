from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
import sqlalchemy as sa
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from freeride.core.errors import (
    AlreadyActiveError,
    CapacityExceededError,
    ConflictError,
    NotFoundError,
)
from freeride.db.base import Base
from freeride.models.audit_log import AuditLog
from freeride.models.free_days import Active, FreeDaysRule, Pending
from freeride.services import free_days as ledger
from freeride.services.free_days import (
    activate_beneficiary,
    add_manual_beneficiary,
    apply_auto_rules_to_new_user,
    apply_free_day,
    apply_rules_by_registration_days,
    get_user_free_days,
    remove_beneficiary,
)
from freeride.services.free_days_rules import get_rule, update_rule
from tests.testkit import at, beneficiary_count, grant_active, make_rider, make_rule


# ----- Grant creation -----

def test_manual_grant_is_pending_with_rule_day_count(db):
    rule = make_rule(db, number_of_days=3)
    rider = make_rider(db)

    beneficiary = add_manual_beneficiary(db, rule.id, rider.id)

    assert beneficiary.days_granted == 3
    assert beneficiary.days_remaining == 3
    assert beneficiary.state == Pending()
    assert beneficiary.status == "pending"
    assert rule.current_beneficiaries == 1


def test_manual_grant_unknown_rule_or_rider(db):
    rule = make_rule(db)
    rider = make_rider(db)
    with pytest.raises(NotFoundError):
        add_manual_beneficiary(db, uuid4(), rider.id)
    with pytest.raises(NotFoundError):
        add_manual_beneficiary(db, rule.id, uuid4())


def test_manual_grant_duplicate_is_conflict(db):
    rule = make_rule(db)
    rider = make_rider(db)
    add_manual_beneficiary(db, rule.id, rider.id)

    with pytest.raises(ConflictError):
        add_manual_beneficiary(db, rule.id, rider.id)
    assert rule.current_beneficiaries == 1


def test_manual_grant_at_capacity_fails_without_touching_counter(db):
    rule = make_rule(db, max_beneficiaries=2)
    add_manual_beneficiary(db, rule.id, make_rider(db).id)
    add_manual_beneficiary(db, rule.id, make_rider(db).id)
    assert rule.current_beneficiaries == rule.max_beneficiaries

    with pytest.raises(CapacityExceededError):
        add_manual_beneficiary(db, rule.id, make_rider(db).id)

    assert rule.current_beneficiaries == 2
    assert beneficiary_count(db, rule.id) == 2


def test_capacity_check_reads_the_store_not_a_stale_object(db):
    rule = make_rule(db, max_beneficiaries=1)
    db.execute(
        sa.update(FreeDaysRule)
        .where(FreeDaysRule.id == rule.id)
        .values(current_beneficiaries=1)
        .execution_options(synchronize_session=False)
    )
    with pytest.raises(CapacityExceededError):
        add_manual_beneficiary(db, rule.id, make_rider(db).id)


def test_remove_beneficiary_decrements_counter(db):
    rule = make_rule(db)
    rider = make_rider(db)
    other = make_rider(db)
    add_manual_beneficiary(db, rule.id, rider.id)
    add_manual_beneficiary(db, rule.id, other.id)

    remove_beneficiary(db, rule.id, rider.id)

    assert rule.current_beneficiaries == 1
    assert beneficiary_count(db, rule.id) == 1
    with pytest.raises(NotFoundError):
        remove_beneficiary(db, rule.id, rider.id)


def test_concurrent_removal_decrements_counter_once(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        with Session() as setup:
            rule = make_rule(setup)
            rider = make_rider(setup)
            add_manual_beneficiary(setup, rule.id, rider.id)
            add_manual_beneficiary(setup, rule.id, make_rider(setup).id)
            setup.commit()

        first, second = Session(), Session()
        # The second admin has the grant on screen before the first one removes it.
        assert ledger._find_beneficiary(second, rule.id, rider.id) is not None

        remove_beneficiary(first, rule.id, rider.id)
        first.commit()
        with pytest.raises(NotFoundError):
            remove_beneficiary(second, rule.id, rider.id)
        second.rollback()
        first.close()
        second.close()

        with Session() as check:
            counter = check.get(FreeDaysRule, rule.id).current_beneficiaries
            assert counter == beneficiary_count(check, rule.id) == 1
    finally:
        engine.dispose()


def test_removed_slot_can_be_granted_again(db):
    rule = make_rule(db, max_beneficiaries=1)
    rider = make_rider(db)
    add_manual_beneficiary(db, rule.id, rider.id)
    remove_beneficiary(db, rule.id, rider.id)

    add_manual_beneficiary(db, rule.id, make_rider(db).id)
    assert rule.current_beneficiaries == 1


def test_grant_and_remove_are_audited(db):
    rule = make_rule(db)
    rider = make_rider(db)
    admin = make_rider(db, role="ADMIN")
    add_manual_beneficiary(db, rule.id, rider.id, actor_user_id=admin.id)
    remove_beneficiary(db, rule.id, rider.id, actor_user_id=admin.id)
    db.flush()

    rows = db.scalars(
        sa.select(AuditLog).where(AuditLog.entity_type == "FREE_DAYS_BENEFICIARY").order_by(AuditLog.created_at)
    ).all()
    assert sorted(r.action for r in rows) == ["CREATE", "DELETE"]
    assert all(r.actor_user_id == admin.id for r in rows)
    assert all(r.data["rule_id"] == str(rule.id) for r in rows)


# ----- Activation -----

def test_scenario_a_activation_fixes_three_day_expiry(db, frozen_now):
    rule = make_rule(db, number_of_days=3)
    rider = make_rider(db)
    beneficiary = add_manual_beneficiary(db, rule.id, rider.id)

    activate_beneficiary(db, beneficiary.id, rider.id)

    assert beneficiary.days_remaining == 3
    state = beneficiary.state
    assert isinstance(state, Active)
    assert state.start_date == frozen_now.now
    assert state.expires_at - state.start_date == timedelta(days=3)


def test_activation_counts_from_activation_not_grant(db, frozen_now):
    rule = make_rule(db, number_of_days=2)
    rider = make_rider(db)
    beneficiary = add_manual_beneficiary(db, rule.id, rider.id)

    frozen_now.advance(days=40)
    activate_beneficiary(db, beneficiary.id, rider.id)

    assert beneficiary.state.expires_at == frozen_now.now + timedelta(days=2)


def test_activation_twice_is_already_active(db, frozen_now):
    rule = make_rule(db)
    rider = make_rider(db)
    beneficiary = grant_active(db, rule, rider)

    with pytest.raises(AlreadyActiveError):
        activate_beneficiary(db, beneficiary.id, rider.id)


def test_activation_requires_owner_and_active_grant(db, frozen_now):
    rule = make_rule(db, number_of_days=1)
    rider = make_rider(db)
    stranger = make_rider(db)
    beneficiary = add_manual_beneficiary(db, rule.id, rider.id)

    with pytest.raises(NotFoundError):
        activate_beneficiary(db, beneficiary.id, stranger.id)
    with pytest.raises(NotFoundError):
        activate_beneficiary(db, uuid4(), rider.id)

    activate_beneficiary(db, beneficiary.id, rider.id)
    apply_free_day(db, rider.id, at(2, 9), at(2, 10), 1000)
    assert beneficiary.is_active is False
    with pytest.raises(NotFoundError):
        activate_beneficiary(db, beneficiary.id, rider.id)


# ----- Consumption -----

def test_applies_free_day_and_decrements_by_one(db, frozen_now):
    rule = make_rule(db, name="Launch week", number_of_days=3)
    rider = make_rider(db)
    beneficiary = grant_active(db, rule, rider)

    out = apply_free_day(db, rider.id, at(2, 10), at(2, 18), 1000)

    assert out.applied is True
    assert out.overtime_cost == 0
    assert out.rule_name == "Launch week"
    assert beneficiary.days_remaining == 2
    assert beneficiary.is_active is True


def test_overtime_billed_past_window_end(db, frozen_now):
    rule = make_rule(db, start_hour=8, end_hour=20)
    rider = make_rider(db)
    grant_active(db, rule, rider)

    out = apply_free_day(db, rider.id, at(2, 19, 30), at(2, 21, 10), 1000)

    assert out.applied is True
    assert out.overtime_cost == 2000


def test_ride_starting_at_window_end_is_not_covered(db, frozen_now):
    rule = make_rule(db, start_hour=8, end_hour=20)
    rider = make_rider(db)
    beneficiary = grant_active(db, rule, rider)

    out = apply_free_day(db, rider.id, at(2, 20), at(2, 21), 1000)

    assert out.applied is False
    assert out.overtime_cost == 0
    assert out.rule_name == ""
    assert beneficiary.days_remaining == 3


def test_one_day_per_ride_regardless_of_duration(db, frozen_now):
    rule = make_rule(db, number_of_days=3)
    rider = make_rider(db)
    beneficiary = grant_active(db, rule, rider)

    apply_free_day(db, rider.id, at(2, 9), at(3, 7), 1000)

    assert beneficiary.days_remaining == 2


def test_last_day_exhausts_grant(db, frozen_now):
    rule = make_rule(db, number_of_days=2)
    rider = make_rider(db)
    beneficiary = grant_active(db, rule, rider)

    assert apply_free_day(db, rider.id, at(2, 9), at(2, 10), 1000).applied
    assert apply_free_day(db, rider.id, at(2, 11), at(2, 12), 1000).applied
    assert beneficiary.days_remaining == 0
    assert beneficiary.is_active is False
    assert beneficiary.status == "exhausted"

    assert apply_free_day(db, rider.id, at(2, 13), at(2, 14), 1000).applied is False
    assert beneficiary.days_remaining == 0


def test_pending_grant_is_never_consumed(db, frozen_now):
    rule = make_rule(db)
    rider = make_rider(db)
    beneficiary = add_manual_beneficiary(db, rule.id, rider.id)

    out = apply_free_day(db, rider.id, at(2, 10), at(2, 11), 1000)

    assert out.applied is False
    assert beneficiary.days_remaining == 3


def test_grant_activated_after_ride_end_or_expired_before_start_is_skipped(db, frozen_now):
    rule = make_rule(db, number_of_days=1)
    rider = make_rider(db)
    grant_active(db, rule, rider)  # active 2026-03-02 08:00 -> 2026-03-03 08:00

    assert apply_free_day(db, rider.id, at(2, 6), at(2, 7), 1000).applied is False
    assert apply_free_day(db, rider.id, at(3, 8), at(3, 9), 1000).applied is False
    # Activated during the ride.
    assert apply_free_day(db, rider.id, at(2, 7), at(2, 9), 1000).applied is True


def test_soonest_expiry_is_used_first(db, frozen_now):
    long_rule = make_rule(db, name="Long", number_of_days=10)
    short_rule = make_rule(db, name="Short", number_of_days=2)
    rider = make_rider(db)
    long_grant = grant_active(db, long_rule, rider)
    short_grant = grant_active(db, short_rule, rider)

    out = apply_free_day(db, rider.id, at(2, 10), at(2, 11), 1000)

    assert out.rule_name == "Short"
    assert short_grant.days_remaining == 1
    assert long_grant.days_remaining == 10


def test_window_mismatch_falls_through_to_next_grant(db, frozen_now):
    morning = make_rule(db, name="Morning", number_of_days=2, start_hour=6, end_hour=12)
    anytime = make_rule(db, name="Anytime", number_of_days=5)
    rider = make_rider(db)
    morning_grant = grant_active(db, morning, rider)
    grant_active(db, anytime, rider)

    out = apply_free_day(db, rider.id, at(2, 15), at(2, 16), 1000)

    assert out.rule_name == "Anytime"
    assert morning_grant.days_remaining == 2


def test_window_edit_applies_to_existing_grants(db, frozen_now):
    rule = make_rule(db, start_hour=8, end_hour=20)
    rider = make_rider(db)
    grant_active(db, rule, rider)

    assert apply_free_day(db, rider.id, at(2, 21), at(2, 22), 1000).applied is False
    update_rule(db, rule.id, {"end_hour": 23})
    out = apply_free_day(db, rider.id, at(2, 21), at(2, 23, 30), 1000)

    assert out.applied is True
    assert out.overtime_cost == 1000


def test_conditional_decrement_never_goes_below_zero(db, frozen_now):
    rule = make_rule(db, number_of_days=1)
    rider = make_rider(db)
    beneficiary = grant_active(db, rule, rider)

    assert ledger._consume_one_day(db, beneficiary) is True
    assert ledger._consume_one_day(db, beneficiary) is False
    assert beneficiary.days_remaining == 0
    assert beneficiary.days_used == 1


def test_no_grants_is_a_negative_result(db):
    rider = make_rider(db)
    out = apply_free_day(db, rider.id, at(2, 10), at(2, 11), 1000)
    assert out.model_dump() == {"applied": False, "overtime_cost": 0, "rule_name": ""}


# ----- Sweeps -----

def test_new_user_sweep_grants_matching_rules_only(db, frozen_now):
    welcome = make_rule(db, name="Welcome", target_type="NEW_USERS")
    make_rule(db, name="Manual", target_type="MANUAL")
    make_rule(db, name="Loyalty", target_type="EXISTING_BY_DAYS", target_days_since_registration=30)
    disabled = make_rule(db, name="Disabled", target_type="NEW_USERS")
    update_rule(db, disabled.id, {"is_active": False})
    rider = make_rider(db)

    granted = apply_auto_rules_to_new_user(db, rider.id)

    assert [b.rule_id for b in granted] == [welcome.id]
    assert granted[0].state == Pending()
    assert welcome.current_beneficiaries == 1


def test_new_user_sweep_is_idempotent(db, frozen_now):
    rule = make_rule(db, target_type="NEW_USERS")
    rider = make_rider(db)

    assert len(apply_auto_rules_to_new_user(db, rider.id)) == 1
    assert apply_auto_rules_to_new_user(db, rider.id) == []
    assert rule.current_beneficiaries == 1


def test_new_user_sweep_skips_full_and_out_of_window_rules(db, frozen_now):
    full = make_rule(db, name="Full", max_beneficiaries=1)
    add_manual_beneficiary(db, full.id, make_rider(db).id)
    make_rule(db, name="Future", valid_from=frozen_now.now + timedelta(days=1))
    make_rule(db, name="Past", valid_until=frozen_now.now - timedelta(seconds=1))
    open_rule = make_rule(
        db,
        name="Open",
        valid_from=frozen_now.now - timedelta(days=1),
        valid_until=frozen_now.now + timedelta(days=1),
    )
    rider = make_rider(db)

    granted = apply_auto_rules_to_new_user(db, rider.id)

    assert [b.rule_id for b in granted] == [open_rule.id]
    assert full.current_beneficiaries == 1


def test_registration_sweep_grants_riders_past_cutoff(db, frozen_now):
    rule = make_rule(db, target_type="EXISTING_BY_DAYS", target_days_since_registration=30)
    veteran = make_rider(db, registered_at=frozen_now.now - timedelta(days=45))
    exact = make_rider(db, registered_at=frozen_now.now - timedelta(days=30))
    newcomer = make_rider(db, registered_at=frozen_now.now - timedelta(days=5))
    make_rider(db, role="ADMIN", registered_at=frozen_now.now - timedelta(days=400))

    summary = apply_rules_by_registration_days(db)

    assert summary.rules == 1
    assert summary.granted == 2
    holders = {b.user_id for b in get_rule(db, rule.id).beneficiaries}
    assert holders == {veteran.id, exact.id}
    assert newcomer.id not in holders
    assert rule.current_beneficiaries == 2


def test_registration_sweep_stops_at_cap(db, frozen_now):
    rule = make_rule(
        db,
        target_type="EXISTING_BY_DAYS",
        target_days_since_registration=1,
        max_beneficiaries=2,
    )
    for days in (10, 9, 8, 7):
        make_rider(db, registered_at=frozen_now.now - timedelta(days=days))

    summary = apply_rules_by_registration_days(db)

    assert summary.granted == 2
    assert rule.current_beneficiaries == 2
    assert beneficiary_count(db, rule.id) == 2


def test_registration_sweep_rerun_skips_already_granted(db, frozen_now):
    rule = make_rule(db, target_type="EXISTING_BY_DAYS", target_days_since_registration=1)
    for days in (3, 4):
        make_rider(db, registered_at=frozen_now.now - timedelta(days=days))

    assert apply_rules_by_registration_days(db).granted == 2
    rerun = apply_rules_by_registration_days(db)

    assert rerun.granted == 0
    assert rerun.skipped == 2
    assert rule.current_beneficiaries == 2


def test_registration_sweep_ignores_rules_without_threshold(db, frozen_now):
    make_rule(db, target_type="EXISTING_BY_DAYS")
    make_rider(db, registered_at=frozen_now.now - timedelta(days=400))

    summary = apply_rules_by_registration_days(db)

    assert summary.rules == 0
    assert summary.granted == 0


# ----- Read model -----

def test_user_free_days_lists_usable_grants_soonest_first(db, frozen_now):
    rider = make_rider(db)
    later = make_rule(db, name="Later", number_of_days=10, start_hour=8, end_hour=20)
    sooner = make_rule(db, name="Sooner", number_of_days=2)
    waiting = make_rule(db, name="Waiting", number_of_days=4)
    spent = make_rule(db, name="Spent", number_of_days=1)
    grant_active(db, later, rider)
    grant_active(db, sooner, rider)
    add_manual_beneficiary(db, waiting.id, rider.id)
    grant_active(db, spent, rider)
    # "Spent" expires first, so the ride consumes it.
    assert apply_free_day(db, rider.id, at(2, 9), at(2, 10), 1000).rule_name == "Spent"

    items = get_user_free_days(db, rider.id)

    assert [i.rule.name for i in items] == ["Sooner", "Later", "Waiting"]
    assert items[1].rule.start_hour == 8
    assert items[1].rule.end_hour == 20
    assert items[2].status == "pending"
    assert items[2].expires_at is None


def test_user_free_days_hides_expired_grants(db, frozen_now):
    rider = make_rider(db)
    rule = make_rule(db, number_of_days=1)
    grant_active(db, rule, rider)

    frozen_now.advance(days=2)

    assert get_user_free_days(db, rider.id) == []
