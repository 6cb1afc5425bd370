"""Fraud scoring, alert resolution and affiliate payouts."""

from datetime import datetime, timedelta, timezone
import uuid

import pytest
from fastapi import HTTPException

from clinicops.db.enums import (
    AffiliateStatus,
    CommissionEventStatus,
    CommissionPlanType,
    FraudAlertStatus,
    FraudAlertType,
    FraudSeverity,
    PayoutMethod,
    PayoutStatus,
)
from clinicops.db.models import (
    Affiliate,
    AffiliateRefCode,
    CommissionPlan,
    FraudAlert,
    FraudConfig,
    Patient,
)
from clinicops.services import commission_service, fraud_service, payout_service


def _now():
    return datetime.now(timezone.utc)


def _setup_affiliate(db, clinic, **kwargs) -> Affiliate:
    plan = CommissionPlan(
        id=uuid.uuid4(),
        clinic_id=clinic.id,
        name="Flat",
        plan_type=CommissionPlanType.FLAT,
        flat_amount_cents=kwargs.pop("flat_amount_cents", 3000),
        hold_days=0,
    )
    db.add(plan)
    db.flush()
    affiliate = Affiliate(
        id=uuid.uuid4(),
        clinic_id=clinic.id,
        name="Rep",
        email=kwargs.pop("email", f"rep-{uuid.uuid4().hex[:6]}@example.com"),
        commission_plan_id=plan.id,
        **kwargs,
    )
    db.add(affiliate)
    db.flush()
    return affiliate


def _approved_events(db, clinic, affiliate, count):
    events = []
    for _ in range(count):
        result = commission_service.record_conversion(
            db,
            clinic_id=clinic.id,
            amount_cents=20000,
            affiliate_id=affiliate.id,
            order_id=f"ORD-{uuid.uuid4().hex[:8]}",
        )
        events.append(result.event)
    commission_service.approve_pending_commissions(
        db, now=_now() + timedelta(seconds=5), clinic_id=clinic.id
    )
    for event in events:
        db.refresh(event)
    return events


# =============================================================================
# Scoring
# =============================================================================


def _signal(severity):
    return fraud_service.FraudSignal(FraudAlertType.VELOCITY_SPIKE, severity, "test")


def test_score_signals_recommendations():
    assert fraud_service.score_signals([]) == (0, "approve")
    assert fraud_service.score_signals([_signal(FraudSeverity.LOW)]) == (5, "approve")
    assert fraud_service.score_signals([_signal(FraudSeverity.HIGH)]) == (25, "review")
    assert fraud_service.score_signals(
        [_signal(FraudSeverity.MEDIUM), _signal(FraudSeverity.MEDIUM)]
    ) == (30, "review")
    assert fraud_service.score_signals([_signal(FraudSeverity.CRITICAL)]) == (40, "reject")


def test_score_is_capped():
    signals = [_signal(FraudSeverity.CRITICAL)] * 4
    score, _ = fraud_service.score_signals(signals)
    assert score == 100


def test_default_fraud_config(db, test_clinic):
    config = fraud_service.get_fraud_config(db, test_clinic.id)
    assert config.high_risk_score_threshold == 25
    assert config.auto_hold_on_high_risk is True


# =============================================================================
# Conversion checks
# =============================================================================


def test_self_referral_holds_event(db, test_clinic, test_patient):
    affiliate = _setup_affiliate(db, test_clinic, email=test_patient.email.upper())

    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        patient_id=test_patient.id,
        order_id="ORD-SELF",
    )
    assert result.fraud.recommendation == "reject"
    assert result.fraud.held is True
    assert result.event.status == CommissionEventStatus.ON_HOLD
    assert result.event.hold_reason == "fraud"

    alert = db.query(FraudAlert).filter(FraudAlert.commission_event_id == result.event.id).one()
    assert alert.alert_type == FraudAlertType.SELF_REFERRAL
    assert alert.severity == FraudSeverity.CRITICAL
    assert alert.status == FraudAlertStatus.OPEN


def test_auto_suspend_on_critical(db, test_clinic, test_patient):
    db.add(FraudConfig(clinic_id=test_clinic.id, auto_suspend_on_critical=True))
    db.flush()
    affiliate = _setup_affiliate(db, test_clinic, email=test_patient.email)

    commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        patient_id=test_patient.id,
        order_id="ORD-SUSPEND",
    )
    db.refresh(affiliate)
    assert affiliate.status == AffiliateStatus.SUSPENDED


def test_hourly_velocity_flags_review(db, test_clinic):
    db.add(FraudConfig(clinic_id=test_clinic.id, max_conversions_per_hour=2))
    db.flush()
    affiliate = _setup_affiliate(db, test_clinic)

    results = [
        commission_service.record_conversion(
            db,
            clinic_id=test_clinic.id,
            amount_cents=5000,
            affiliate_id=affiliate.id,
            order_id=f"ORD-V{i}",
        )
        for i in range(3)
    ]
    assert results[0].fraud.passed
    assert results[1].fraud.passed
    assert results[2].fraud.recommendation == "review"
    assert results[2].event.status == CommissionEventStatus.ON_HOLD


def test_duplicate_ip_signal(db, test_clinic):
    db.add(FraudConfig(clinic_id=test_clinic.id, max_conversions_per_ip=2))
    affiliate = _setup_affiliate(db, test_clinic)
    db.add(AffiliateRefCode(clinic_id=test_clinic.id, affiliate_id=affiliate.id, code="IPDUP"))
    db.flush()

    results = []
    for i in range(2):
        patient = Patient(clinic_id=test_clinic.id, first_name="P", last_name=str(i))
        db.add(patient)
        db.flush()
        commission_service.record_touch(
            db,
            clinic_id=test_clinic.id,
            ref_code="IPDUP",
            patient_id=patient.id,
            ip_address="192.0.2.44",
        )
        results.append(
            commission_service.record_conversion(
                db,
                clinic_id=test_clinic.id,
                amount_cents=5000,
                patient_id=patient.id,
                order_id=f"ORD-IP{i}",
            )
        )

    assert results[0].fraud.signals == []
    signals = results[1].fraud.signals
    assert [s.alert_type for s in signals] == [FraudAlertType.DUPLICATE_IP]
    assert signals[0].severity == FraudSeverity.MEDIUM
    # A single MEDIUM signal stays under the review threshold
    assert results[1].fraud.passed
    assert results[1].event.status == CommissionEventStatus.PENDING


# =============================================================================
# Alert resolution
# =============================================================================


def _held_event(db, clinic, patient):
    affiliate = _setup_affiliate(db, clinic, email=patient.email)
    result = commission_service.record_conversion(
        db,
        clinic_id=clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        patient_id=patient.id,
        order_id=f"ORD-{uuid.uuid4().hex[:8]}",
    )
    alert = result.fraud.alerts[0]
    return result.event, alert


def test_false_positive_releases_event(db, test_clinic, test_patient, test_user):
    event, alert = _held_event(db, test_clinic, test_patient)

    alert = fraud_service.resolve_alert(
        db,
        clinic_id=test_clinic.id,
        alert_id=alert.id,
        status=FraudAlertStatus.FALSE_POSITIVE,
        notes="Spouse account",
        actor_user_id=test_user.id,
    )
    assert alert.resolved_by == test_user.id
    db.refresh(event)
    assert event.status == CommissionEventStatus.PENDING
    assert event.hold_reason is None


def test_confirmed_fraud_voids_event(db, test_clinic, test_patient):
    event, alert = _held_event(db, test_clinic, test_patient)

    fraud_service.resolve_alert(
        db,
        clinic_id=test_clinic.id,
        alert_id=alert.id,
        status=FraudAlertStatus.CONFIRMED_FRAUD,
    )
    db.refresh(event)
    assert event.status == CommissionEventStatus.VOIDED


def test_resolve_alert_cannot_reopen(db, test_clinic, test_patient):
    _, alert = _held_event(db, test_clinic, test_patient)
    with pytest.raises(HTTPException) as exc:
        fraud_service.resolve_alert(
            db, clinic_id=test_clinic.id, alert_id=alert.id, status=FraudAlertStatus.OPEN
        )
    assert exc.value.status_code == 422


def test_auto_hold_disabled_leaves_event_pending_but_blocked(db, test_clinic, test_patient):
    db.add(FraudConfig(clinic_id=test_clinic.id, auto_hold_on_high_risk=False))
    db.flush()
    affiliate = _setup_affiliate(db, test_clinic, email=test_patient.email)

    result = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        patient_id=test_patient.id,
        order_id="ORD-NOHOLD",
    )
    assert result.fraud.recommendation == "reject"
    assert result.fraud.held is False
    assert result.event.status == CommissionEventStatus.PENDING
    assert result.event.hold_reason is None
    assert fraud_service.is_event_held(db, result.event) is True

    approved = commission_service.approve_pending_commissions(
        db, now=_now() + timedelta(seconds=5), clinic_id=test_clinic.id
    )
    assert approved == 0
    db.refresh(result.event)
    assert result.event.status == CommissionEventStatus.PENDING


def test_open_alert_blocks_approval(db, test_clinic):
    affiliate = _setup_affiliate(db, test_clinic)
    event = commission_service.record_conversion(
        db,
        clinic_id=test_clinic.id,
        amount_cents=10000,
        affiliate_id=affiliate.id,
        order_id="ORD-BLOCK",
    ).event
    db.add(
        FraudAlert(
            clinic_id=test_clinic.id,
            affiliate_id=affiliate.id,
            commission_event_id=event.id,
            alert_type=FraudAlertType.REFUND_ABUSE,
            severity=FraudSeverity.MEDIUM,
            description="Manual review",
        )
    )
    db.commit()

    approved = commission_service.approve_pending_commissions(
        db, now=_now() + timedelta(days=1), clinic_id=test_clinic.id
    )
    assert approved == 0


# =============================================================================
# Payouts
# =============================================================================


def test_eligibility_reasons_in_order(db, test_clinic):
    affiliate = _setup_affiliate(db, test_clinic, flat_amount_cents=2000)
    _approved_events(db, test_clinic, affiliate, 1)

    eligibility = payout_service.check_payout_eligibility(
        db, clinic_id=test_clinic.id, affiliate_id=affiliate.id
    )
    assert eligibility.eligible is False
    assert eligibility.available_amount_cents == 2000
    assert "below minimum" in eligibility.reason

    _approved_events(db, test_clinic, affiliate, 2)
    eligibility = payout_service.check_payout_eligibility(
        db, clinic_id=test_clinic.id, affiliate_id=affiliate.id
    )
    assert eligibility.available_amount_cents == 6000
    assert eligibility.reason == "No verified payout method on file"

    affiliate.payout_method = PayoutMethod.BANK
    affiliate.payout_method_verified = True
    db.commit()
    eligibility = payout_service.check_payout_eligibility(
        db, clinic_id=test_clinic.id, affiliate_id=affiliate.id
    )
    assert eligibility.eligible is True
    assert eligibility.event_count == 3


def test_tax_doc_required_over_threshold(db, test_clinic):
    affiliate = _setup_affiliate(
        db,
        test_clinic,
        flat_amount_cents=35000,
        payout_method=PayoutMethod.PAYPAL,
        payout_method_verified=True,
    )
    _approved_events(db, test_clinic, affiliate, 2)

    eligibility = payout_service.check_payout_eligibility(
        db, clinic_id=test_clinic.id, affiliate_id=affiliate.id
    )
    assert eligibility.requires_tax_doc is True
    assert eligibility.reason == "Tax documents required but not verified"


def test_wire_payout_lifecycle(db, test_clinic):
    affiliate = _setup_affiliate(
        db,
        test_clinic,
        flat_amount_cents=3000,
        payout_method=PayoutMethod.WIRE,
        payout_method_verified=True,
    )
    events = _approved_events(db, test_clinic, affiliate, 2)

    payout = payout_service.create_payout(
        db, clinic_id=test_clinic.id, affiliate_id=affiliate.id
    )
    assert payout.status == PayoutStatus.PENDING
    assert payout.amount_cents == 6000
    assert payout.fee_cents == 2500
    assert payout.net_amount_cents == 3500
    assert payout.event_count == 2

    payout = payout_service.complete_payout(
        db, clinic_id=test_clinic.id, payout_id=payout.id
    )
    assert payout.status == PayoutStatus.COMPLETED
    for event in events:
        db.refresh(event)
        assert event.status == CommissionEventStatus.PAID
        assert event.paid_at is not None

    with pytest.raises(HTTPException) as exc:
        payout_service.fail_payout(
            db, clinic_id=test_clinic.id, payout_id=payout.id, reason="late bounce"
        )
    assert exc.value.status_code == 409


def test_failed_payout_releases_events(db, test_clinic):
    affiliate = _setup_affiliate(
        db,
        test_clinic,
        flat_amount_cents=3000,
        payout_method=PayoutMethod.BANK,
        payout_method_verified=True,
    )
    events = _approved_events(db, test_clinic, affiliate, 2)
    payout = payout_service.create_payout(
        db, clinic_id=test_clinic.id, affiliate_id=affiliate.id
    )

    with pytest.raises(HTTPException) as exc:
        payout_service.fail_payout(db, clinic_id=test_clinic.id, payout_id=payout.id, reason=" ")
    assert exc.value.status_code == 422

    payout = payout_service.fail_payout(
        db, clinic_id=test_clinic.id, payout_id=payout.id, reason="Account closed"
    )
    assert payout.status == PayoutStatus.FAILED
    for event in events:
        db.refresh(event)
        assert event.payout_id is None
        assert event.status == CommissionEventStatus.APPROVED


def test_create_payout_rejects_ineligible(db, test_clinic):
    affiliate = _setup_affiliate(db, test_clinic)
    with pytest.raises(HTTPException) as exc:
        payout_service.create_payout(db, clinic_id=test_clinic.id, affiliate_id=affiliate.id)
    assert exc.value.status_code == 409


def test_event_in_payout_cannot_be_voided(db, test_clinic):
    affiliate = _setup_affiliate(
        db,
        test_clinic,
        flat_amount_cents=6000,
        payout_method=PayoutMethod.BANK,
        payout_method_verified=True,
    )
    event = _approved_events(db, test_clinic, affiliate, 1)[0]
    payout = payout_service.create_payout(
        db, clinic_id=test_clinic.id, affiliate_id=affiliate.id
    )
    with pytest.raises(HTTPException) as exc:
        commission_service.void_commission_event(
            db, clinic_id=test_clinic.id, event_id=event.id
        )
    assert exc.value.status_code == 409

    payout_service.cancel_payout(db, clinic_id=test_clinic.id, payout_id=payout.id)
    db.refresh(event)
    assert event.payout_id is None


def _bank_affiliate_with_events(db, clinic, event_count):
    affiliate = _setup_affiliate(
        db,
        clinic,
        flat_amount_cents=3000,
        payout_method=PayoutMethod.BANK,
        payout_method_verified=True,
    )
    events = _approved_events(db, clinic, affiliate, event_count)
    return affiliate, events


def test_confirmed_fraud_removes_event_from_open_payout(db, test_clinic):
    affiliate, events = _bank_affiliate_with_events(db, test_clinic, 2)
    alert = FraudAlert(
        clinic_id=test_clinic.id,
        affiliate_id=affiliate.id,
        commission_event_id=events[0].id,
        alert_type=FraudAlertType.REFUND_ABUSE,
        severity=FraudSeverity.MEDIUM,
        description="Chargeback pattern",
        status=FraudAlertStatus.INVESTIGATING,
    )
    db.add(alert)
    db.commit()

    payout = payout_service.create_payout(
        db, clinic_id=test_clinic.id, affiliate_id=affiliate.id
    )
    assert payout.amount_cents == 6000
    assert payout.event_count == 2

    fraud_service.resolve_alert(
        db,
        clinic_id=test_clinic.id,
        alert_id=alert.id,
        status=FraudAlertStatus.CONFIRMED_FRAUD,
    )
    db.refresh(payout)
    db.refresh(events[0])
    assert events[0].status == CommissionEventStatus.VOIDED
    assert events[0].payout_id is None
    assert payout.status == PayoutStatus.PENDING
    assert payout.amount_cents == 3000
    assert payout.net_amount_cents == 3000
    assert payout.event_count == 1

    payout = payout_service.complete_payout(
        db, clinic_id=test_clinic.id, payout_id=payout.id
    )
    db.refresh(events[1])
    assert payout.amount_cents == 3000
    assert events[1].status == CommissionEventStatus.PAID
    assert [e.status for e in events] == [
        CommissionEventStatus.VOIDED,
        CommissionEventStatus.PAID,
    ]


def test_refund_of_last_batched_event_cancels_payout(db, test_clinic):
    affiliate = _setup_affiliate(
        db,
        test_clinic,
        flat_amount_cents=6000,
        payout_method=PayoutMethod.BANK,
        payout_method_verified=True,
    )
    event = _approved_events(db, test_clinic, affiliate, 1)[0]
    payout = payout_service.create_payout(
        db, clinic_id=test_clinic.id, affiliate_id=affiliate.id
    )

    result = commission_service.reverse_commission_for_refund(
        db, clinic_id=test_clinic.id, order_id=event.order_id
    )
    assert result.event.status == CommissionEventStatus.REVERSED
    assert result.event.payout_id is None

    db.refresh(payout)
    assert payout.status == PayoutStatus.CANCELLED
    assert payout.amount_cents == 0
    assert payout.event_count == 0
    with pytest.raises(HTTPException) as exc:
        payout_service.complete_payout(db, clinic_id=test_clinic.id, payout_id=payout.id)
    assert exc.value.status_code == 409
