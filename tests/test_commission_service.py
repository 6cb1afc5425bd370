from datetime import datetime, timedelta, timezone
import uuid

import pytest
from fastapi import HTTPException

from clinicops.db.enums import (
    AffiliateStatus,
    AttributionModel,
    CommissionEventStatus,
    CommissionPlanType,
)
from clinicops.db.models import (
    Affiliate,
    AffiliateRefCode,
    CommissionEvent,
    CommissionPlan,
    CommissionPromotion,
    CommissionTier,
    ProductRateRule,
)
from clinicops.services import commission_service


def _now():
    return datetime.now(timezone.utc)


def _plan(db, clinic, **kwargs) -> CommissionPlan:
    plan = CommissionPlan(
        id=uuid.uuid4(),
        clinic_id=clinic.id,
        name=kwargs.pop("name", "Standard"),
        plan_type=kwargs.pop("plan_type", CommissionPlanType.PERCENT),
        percent_bps=kwargs.pop("percent_bps", 1000),
        hold_days=kwargs.pop("hold_days", 30),
        **kwargs,
    )
    db.add(plan)
    db.flush()
    return plan


def _affiliate(db, clinic, plan=None, **kwargs) -> Affiliate:
    affiliate = Affiliate(
        id=uuid.uuid4(),
        clinic_id=clinic.id,
        name=kwargs.pop("name", "Partner Gym"),
        email=kwargs.pop("email", f"partner-{uuid.uuid4().hex[:6]}@example.com"),
        commission_plan_id=plan.id if plan else None,
        **kwargs,
    )
    db.add(affiliate)
    db.flush()
    return affiliate


def _ref_code(db, clinic, affiliate, code="GYM10") -> AffiliateRefCode:
    ref = AffiliateRefCode(clinic_id=clinic.id, affiliate_id=affiliate.id, code=code)
    db.add(ref)
    db.flush()
    return ref


def test_calculate_commission():
    assert commission_service.calculate_commission(
        10000, CommissionPlanType.PERCENT, None, 1250
    ) == 1250
    assert commission_service.calculate_commission(
        10000, CommissionPlanType.FLAT, 2000, None
    ) == 2000
    assert commission_service.calculate_commission(
        10000, CommissionPlanType.PERCENT, None, None
    ) == 0


def test_recurring_amount_compounds():
    assert commission_service.recurring_amount(1000, 10, 1) == 1000
    assert commission_service.recurring_amount(1000, 10, 2) == 900
    assert commission_service.recurring_amount(1000, 10, 3) == 810
    assert commission_service.recurring_amount(1000, None, 5) == 1000


def test_record_conversion_percent_plan(db, test_clinic, test_patient):
    plan = _plan(db, test_clinic, percent_bps=1000, hold_days=14)
    affiliate = _affiliate(db, test_clinic, plan)
    occurred = _now() - timedelta(days=1)

    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=25000,
        affiliate_id=affiliate.id,
        patient_id=test_patient.id,
        order_id="ORD-1",
        occurred_at=occurred,
    )

    assert result.skipped is False
    event = result.event
    assert event.commission_amount_cents == 2500
    assert event.status == CommissionEventStatus.PENDING
    assert event.hold_until == occurred + timedelta(days=14)
    assert event.breakdown["base_commission_cents"] == 2500
    assert event.breakdown["total_cents"] == 2500

    db.refresh(affiliate)
    assert affiliate.lifetime_conversions == 1
    assert affiliate.lifetime_revenue_cents == 25000


def test_record_conversion_is_idempotent(db, test_clinic):
    plan = _plan(db, test_clinic)
    affiliate = _affiliate(db, test_clinic, plan)

    first = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        invoice_id="in_1",
    )
    second = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        invoice_id="in_1",
    )
    assert second.skipped is True
    assert second.skip_reason == commission_service.SKIP_DUPLICATE
    assert second.event.id == first.event.id
    assert db.query(CommissionEvent).filter(CommissionEvent.invoice_id == "in_1").count() == 1


def test_record_conversion_validation(db, test_clinic):
    with pytest.raises(HTTPException) as exc:
        commission_service.record_conversion(
            db, clinic_id=test_clinic.id, amount_cents=0, order_id="ORD-0"
        )
    assert exc.value.status_code == 422

    with pytest.raises(HTTPException) as exc:
        commission_service.record_conversion(db, clinic_id=test_clinic.id, amount_cents=500)
    assert exc.value.status_code == 422


def test_record_conversion_skip_reasons(db, test_clinic):
    result = commission_service.record_conversion(
        db, clinic_id=test_clinic.id, amount_cents=5000, order_id="ORD-NA"
    )
    assert result.skip_reason == commission_service.SKIP_NO_AFFILIATE

    paused = _affiliate(db, test_clinic, _plan(db, test_clinic), status=AffiliateStatus.PAUSED)
    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=5000,
        affiliate_id=paused.id,
        order_id="ORD-PAUSED",
    )
    assert result.skip_reason == commission_service.SKIP_AFFILIATE_INACTIVE

    planless = _affiliate(db, test_clinic)
    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=5000,
        affiliate_id=planless.id,
        order_id="ORD-NOPLAN",
    )
    assert result.skip_reason == commission_service.SKIP_NO_PLAN


def test_clinic_default_plan_applies(db, test_clinic):
    _plan(db, test_clinic, plan_type=CommissionPlanType.FLAT, flat_amount_cents=1500,
          percent_bps=None, is_default=True)
    affiliate = _affiliate(db, test_clinic)

    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=9900,
        affiliate_id=affiliate.id,
        order_id="ORD-DEFAULT",
    )
    assert result.event.commission_amount_cents == 1500


def test_tier_product_rule_and_promotion_breakdown(db, test_clinic):
    plan = _plan(db, test_clinic, percent_bps=1000, tier_enabled=True)
    db.add(
        CommissionTier(
            plan_id=plan.id,
            level=1,
            name="Gold",
            min_conversions=5,
            min_revenue_cents=0,
            percent_bps=1500,
            bonus_cents=500,
        )
    )
    db.add(
        ProductRateRule(
            plan_id=plan.id,
            name="Peptides",
            priority=10,
            product_category="peptides",
            rate_type=CommissionPlanType.PERCENT,
            percent_bps=2000,
        )
    )
    db.add(
        CommissionPromotion(
            clinic_id=test_clinic.id,
            plan_id=plan.id,
            name="Launch week",
            starts_at=_now() - timedelta(days=1),
            bonus_flat_cents=300,
            max_uses=1,
        )
    )
    affiliate = _affiliate(db, test_clinic, plan, lifetime_conversions=5)
    db.flush()
    db.refresh(plan)

    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        order_id="ORD-TIER",
        product_category="Peptides",
    )
    breakdown = result.event.breakdown
    assert breakdown["tier_name"] == "Gold"
    assert breakdown["base_commission_cents"] == 1500
    assert breakdown["tier_bonus_cents"] == 500
    assert breakdown["product_rule"] == "Category: peptides"
    assert breakdown["product_adjustment_cents"] == 500
    assert breakdown["promotion_bonus_cents"] == 300
    assert result.event.commission_amount_cents == 1500 + 500 + 500 + 300

    # Promotion is used up after one conversion
    second = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        order_id="ORD-TIER-2",
        product_category="Peptides",
    )
    assert second.event.breakdown["promotion_bonus_cents"] == 0


def test_recurring_plan_schedules_decayed_months(db, test_clinic):
    plan = _plan(
        db,
        test_clinic,
        percent_bps=1000,
        recurring_enabled=True,
        recurring_months=3,
        recurring_decay_pct=10,
    )
    affiliate = _affiliate(db, test_clinic, plan)

    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        order_id="ORD-REC",
    )
    assert result.event.recurring_month == 1
    months = sorted(result.recurring_events, key=lambda e: e.recurring_month)
    assert [e.recurring_month for e in months] == [2, 3]
    assert [e.commission_amount_cents for e in months] == [900, 810]
    assert all(e.original_event_id == result.event.id for e in months)
    assert all(e.is_recurring for e in months)


def test_recurring_rates_apply_to_renewal_months(db, test_clinic):
    plan = _plan(
        db,
        test_clinic,
        percent_bps=2000,
        recurring_percent_bps=500,
        recurring_enabled=True,
        recurring_months=3,
        recurring_decay_pct=0,
    )
    affiliate = _affiliate(db, test_clinic, plan)

    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        order_id="ORD-REC-RATE",
    )
    assert result.event.commission_amount_cents == 2000
    assert result.event.breakdown["recurring_base_cents"] == 500
    assert [e.commission_amount_cents for e in result.recurring_events] == [500, 500]


def test_recurring_flat_rate_falls_back_to_plan_percent(db, test_clinic):
    flat = _plan(
        db,
        test_clinic,
        name="Flat renewals",
        plan_type=CommissionPlanType.FLAT,
        percent_bps=None,
        flat_amount_cents=3000,
        recurring_flat_amount_cents=1000,
        recurring_enabled=True,
        recurring_months=2,
    )
    fallback = _plan(
        db,
        test_clinic,
        name="Same rate",
        percent_bps=1500,
        recurring_flat_amount_cents=1000,
        recurring_enabled=True,
        recurring_months=2,
    )
    flat_result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=_affiliate(db, test_clinic, flat).id,
        order_id="ORD-FLAT-REC",
    )
    assert flat_result.event.commission_amount_cents == 3000
    assert [e.commission_amount_cents for e in flat_result.recurring_events] == [1000]

    # A percent plan ignores the flat recurring rate and keeps its percent.
    fallback_result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=_affiliate(db, test_clinic, fallback).id,
        order_id="ORD-PCT-REC",
    )
    assert [e.commission_amount_cents for e in fallback_result.recurring_events] == [1500]


def test_touch_attribution_models(db, test_clinic, test_patient):
    plan = _plan(db, test_clinic)
    first = _affiliate(db, test_clinic, plan, name="First")
    last = _affiliate(db, test_clinic, plan, name="Last")
    _ref_code(db, test_clinic, first, code="FIRST")
    _ref_code(db, test_clinic, last, code="LAST")

    commission_service.record_touch(
        db,
        clinic_id=test_clinic.id,
        ref_code="FIRST",
        patient_id=test_patient.id,
        ip_address="203.0.113.7",
        touched_at=_now() - timedelta(days=3),
    )
    commission_service.record_touch(
        db,
        clinic_id=test_clinic.id,
        ref_code="LAST",
        patient_id=test_patient.id,
        touched_at=_now() - timedelta(days=1),
    )

    assert commission_service.attribute_conversion(
        db, clinic_id=test_clinic.id, patient_id=test_patient.id
    ).affiliate_id == last.id
    assert commission_service.attribute_conversion(
        db,
        clinic_id=test_clinic.id,
        patient_id=test_patient.id,
        model=AttributionModel.FIRST_CLICK,
    ).affiliate_id == first.id

    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=8000,
        patient_id=test_patient.id,
        order_id="ORD-TOUCH",
    )
    assert result.event.affiliate_id == last.id
    assert result.event.touch_id is not None


def test_linear_attribution_credits_affiliate_with_most_touches(db, test_clinic, test_patient):
    plan = _plan(db, test_clinic)
    gym = _affiliate(db, test_clinic, plan, name="Gym")
    spa = _affiliate(db, test_clinic, plan, name="Spa")
    _ref_code(db, test_clinic, gym, code="GYM")
    _ref_code(db, test_clinic, spa, code="SPA")

    for days_ago, code in ((5, "GYM"), (3, "GYM"), (1, "SPA")):
        commission_service.record_touch(
            db,
            clinic_id=test_clinic.id,
            ref_code=code,
            patient_id=test_patient.id,
            touched_at=_now() - timedelta(days=days_ago),
        )

    touch = commission_service.attribute_conversion(
        db, clinic_id=test_clinic.id, patient_id=test_patient.id, model=AttributionModel.LINEAR
    )
    assert touch.affiliate_id == gym.id
    assert commission_service.attribute_conversion(
        db, clinic_id=test_clinic.id, patient_id=test_patient.id
    ).affiliate_id == spa.id

    commission_service.record_touch(
        db,
        clinic_id=test_clinic.id,
        ref_code="SPA",
        patient_id=test_patient.id,
        touched_at=_now() - timedelta(hours=2),
    )
    # Two touches each; the tie goes to the most recent affiliate.
    touch = commission_service.attribute_conversion(
        db, clinic_id=test_clinic.id, patient_id=test_patient.id, model=AttributionModel.LINEAR
    )
    assert touch.affiliate_id == spa.id


def test_touch_weights_split_linear_credit_evenly():
    touches = [object(), object(), object()]
    weights = [w for _, w in commission_service.touch_weights(touches, AttributionModel.LINEAR)]
    assert weights == pytest.approx([1 / 3, 1 / 3, 1 / 3])
    weights = [w for _, w in commission_service.touch_weights(touches, AttributionModel.FIRST_CLICK)]
    assert weights == [1.0, 0.0, 0.0]
    assert commission_service.touch_weights([], AttributionModel.LINEAR) == []


def test_record_touch_unknown_code(db, test_clinic):
    with pytest.raises(HTTPException) as exc:
        commission_service.record_touch(db, clinic_id=test_clinic.id, ref_code="NOPE")
    assert exc.value.status_code == 404


def test_touch_stores_hashed_ip(db, test_clinic):
    affiliate = _affiliate(db, test_clinic, _plan(db, test_clinic))
    _ref_code(db, test_clinic, affiliate, code="HASH")
    touch = commission_service.record_touch(
        db, clinic_id=test_clinic.id, ref_code="HASH", ip_address="198.51.100.1"
    )
    assert touch.ip_address_hash is not None
    assert "198.51.100.1" not in touch.ip_address_hash


def test_approve_pending_after_hold(db, test_clinic):
    plan = _plan(db, test_clinic, hold_days=7)
    affiliate = _affiliate(db, test_clinic, plan)
    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        order_id="ORD-HOLD",
    )

    assert commission_service.approve_pending_commissions(
        db, now=_now(), clinic_id=test_clinic.id
    ) == 0
    assert commission_service.approve_pending_commissions(
        db, now=_now() + timedelta(days=8), clinic_id=test_clinic.id
    ) == 1
    db.refresh(result.event)
    assert result.event.status == CommissionEventStatus.APPROVED
    assert result.event.approved_at is not None


def test_refund_reverses_and_voids_recurring(db, test_clinic):
    plan = _plan(
        db,
        test_clinic,
        recurring_enabled=True,
        recurring_months=3,
        recurring_decay_pct=0,
    )
    affiliate = _affiliate(db, test_clinic, plan)
    commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        order_id="ORD-REFUND",
    )

    result = commission_service.reverse_commission_for_refund(
        db, clinic_id=test_clinic.id, order_id="ORD-REFUND", reason="Chargeback"
    )
    assert result.event.status == CommissionEventStatus.REVERSED
    assert result.event.reversal_reason == "Chargeback"
    assert len(result.recurring_events) == 2
    assert all(e.status == CommissionEventStatus.VOIDED for e in result.recurring_events)

    again = commission_service.reverse_commission_for_refund(
        db, clinic_id=test_clinic.id, order_id="ORD-REFUND"
    )
    assert again.skip_reason == "already_reversed"


def test_refund_respects_clawback_setting(db, test_clinic):
    plan = _plan(db, test_clinic, clawback_enabled=False)
    affiliate = _affiliate(db, test_clinic, plan)
    commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        order_id="ORD-KEEP",
    )
    result = commission_service.reverse_commission_for_refund(
        db, clinic_id=test_clinic.id, order_id="ORD-KEEP"
    )
    assert result.skip_reason == "clawback_disabled"
    assert result.event.status == CommissionEventStatus.PENDING


def test_void_rejects_paid_event(db, test_clinic):
    plan = _plan(db, test_clinic)
    affiliate = _affiliate(db, test_clinic, plan)
    event = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        order_id="ORD-PAID",
    ).event
    event.status = CommissionEventStatus.PAID
    db.commit()

    with pytest.raises(HTTPException) as exc:
        commission_service.void_commission_event(
            db, clinic_id=test_clinic.id, event_id=event.id
        )
    assert exc.value.status_code == 409


def test_void_pending_event(db, test_clinic):
    plan = _plan(db, test_clinic)
    affiliate = _affiliate(db, test_clinic, plan)
    event = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        order_id="ORD-VOID",
    ).event
    event = commission_service.void_commission_event(
        db, clinic_id=test_clinic.id, event_id=event.id, reason="Duplicate order"
    )
    assert event.status == CommissionEventStatus.VOIDED
    assert event.voided_at is not None
