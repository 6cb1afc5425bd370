"""Commission fraud detection - conversion checks, risk scoring and alert resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy.orm import Session

from clinicops.core.constants import (
    FRAUD_DUPLICATE_IP_WINDOW_DAYS,
    FRAUD_REFUND_WINDOW_DAYS,
    FRAUD_VELOCITY_WINDOW_DAYS,
)
from clinicops.db.enums import (
    HOLDING_FRAUD_ALERT_STATUSES,
    AffiliateStatus,
    CommissionEventStatus,
    FraudAlertStatus,
    FraudAlertType,
    FraudSeverity,
)
from clinicops.db.models import (
    Affiliate,
    AffiliateTouch,
    CommissionEvent,
    FraudAlert,
    FraudConfig,
    Patient,
)
from clinicops.services import payout_service

logger = logging.getLogger(__name__)

SEVERITY_SCORES = {
    FraudSeverity.CRITICAL: 40,
    FraudSeverity.HIGH: 25,
    FraudSeverity.MEDIUM: 15,
    FraudSeverity.LOW: 5,
}
MAX_RISK_SCORE = 100

RECOMMEND_APPROVE = "approve"
RECOMMEND_REVIEW = "review"
RECOMMEND_REJECT = "reject"

RESOLUTION_STATUSES = frozenset(
    {
        FraudAlertStatus.INVESTIGATING,
        FraudAlertStatus.CONFIRMED_FRAUD,
        FraudAlertStatus.FALSE_POSITIVE,
        FraudAlertStatus.DISMISSED,
    }
)


@dataclass
class FraudSignal:
    alert_type: FraudAlertType
    severity: FraudSeverity
    description: str
    evidence: dict = field(default_factory=dict)


@dataclass
class FraudCheckResult:
    signals: list[FraudSignal]
    risk_score: int
    recommendation: str
    alerts: list[FraudAlert] = field(default_factory=list)
    held: bool = False

    @property
    def passed(self) -> bool:
        return self.recommendation == RECOMMEND_APPROVE


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_fraud_config(db: Session, clinic_id: UUID) -> FraudConfig:
    """Clinic thresholds; an unsaved default row when the clinic has none."""
    config = db.query(FraudConfig).filter(FraudConfig.clinic_id == clinic_id).first()
    if config:
        return config
    return FraudConfig(
        clinic_id=clinic_id,
        max_conversions_per_day=50,
        max_conversions_per_hour=10,
        velocity_spike_multiplier=3,
        max_conversions_per_ip=3,
        max_refund_rate_pct=20,
        min_refunds_for_alert=5,
        high_risk_score_threshold=25,
        auto_hold_on_high_risk=True,
        auto_suspend_on_critical=False,
    )


# =============================================================================
# Checks
# =============================================================================


def _count_events_since(db: Session, clinic_id: UUID, affiliate_id: UUID, since: datetime) -> int:
    return (
        db.query(CommissionEvent)
        .filter(
            CommissionEvent.clinic_id == clinic_id,
            CommissionEvent.affiliate_id == affiliate_id,
            CommissionEvent.is_recurring.is_(False),
            CommissionEvent.occurred_at >= since,
            CommissionEvent.status != CommissionEventStatus.REVERSED,
        )
        .count()
    )


def check_velocity(
    db: Session, config: FraudConfig, *, clinic_id: UUID, affiliate_id: UUID, now: datetime
) -> list[FraudSignal]:
    """Hourly and daily caps, plus a spike over the trailing 30-day daily average."""
    hourly = _count_events_since(db, clinic_id, affiliate_id, now - timedelta(hours=1))
    daily = _count_events_since(db, clinic_id, affiliate_id, now - timedelta(days=1))
    monthly = _count_events_since(
        db, clinic_id, affiliate_id, now - timedelta(days=FRAUD_VELOCITY_WINDOW_DAYS)
    )

    signals = []
    if hourly > config.max_conversions_per_hour:
        signals.append(
            FraudSignal(
                FraudAlertType.VELOCITY_SPIKE,
                FraudSeverity.HIGH,
                f"{hourly} conversions in the last hour "
                f"(threshold: {config.max_conversions_per_hour})",
                {"window": "hour", "count": hourly, "threshold": config.max_conversions_per_hour},
            )
        )
    if daily > config.max_conversions_per_day:
        signals.append(
            FraudSignal(
                FraudAlertType.VELOCITY_SPIKE,
                FraudSeverity.HIGH,
                f"{daily} conversions in the last 24 hours "
                f"(threshold: {config.max_conversions_per_day})",
                {"window": "day", "count": daily, "threshold": config.max_conversions_per_day},
            )
        )

    daily_average = monthly / FRAUD_VELOCITY_WINDOW_DAYS
    if daily_average > 1 and daily > daily_average * config.velocity_spike_multiplier:
        signals.append(
            FraudSignal(
                FraudAlertType.VELOCITY_SPIKE,
                FraudSeverity.MEDIUM,
                f"{daily} conversions today vs {daily_average:.1f} daily average",
                {
                    "window": "spike",
                    "count": daily,
                    "daily_average": round(daily_average, 2),
                    "multiplier": config.velocity_spike_multiplier,
                },
            )
        )
    return signals


def check_duplicate_ip(
    db: Session,
    config: FraudConfig,
    *,
    clinic_id: UUID,
    affiliate_id: UUID,
    ip_hash: str | None,
    now: datetime,
) -> list[FraudSignal]:
    if not ip_hash:
        return []
    since = now - timedelta(days=FRAUD_DUPLICATE_IP_WINDOW_DAYS)
    conversions = (
        db.query(AffiliateTouch)
        .filter(
            AffiliateTouch.clinic_id == clinic_id,
            AffiliateTouch.affiliate_id == affiliate_id,
            AffiliateTouch.ip_address_hash == ip_hash,
            AffiliateTouch.converted_at.is_not(None),
            AffiliateTouch.converted_at >= since,
        )
        .count()
    )
    max_per_ip = config.max_conversions_per_ip
    if conversions < max_per_ip:
        return []
    severity = FraudSeverity.HIGH if conversions > max_per_ip * 2 else FraudSeverity.MEDIUM
    return [
        FraudSignal(
            FraudAlertType.DUPLICATE_IP,
            severity,
            f"{conversions} conversions from the same IP in {FRAUD_DUPLICATE_IP_WINDOW_DAYS} days",
            {"ip_hash": ip_hash, "count": conversions, "threshold": max_per_ip},
        )
    ]


def check_refund_rate(
    db: Session, config: FraudConfig, *, clinic_id: UUID, affiliate_id: UUID, now: datetime
) -> list[FraudSignal]:
    since = now - timedelta(days=FRAUD_REFUND_WINDOW_DAYS)
    base = db.query(CommissionEvent).filter(
        CommissionEvent.clinic_id == clinic_id,
        CommissionEvent.affiliate_id == affiliate_id,
        CommissionEvent.is_recurring.is_(False),
        CommissionEvent.occurred_at >= since,
    )
    total = base.count()
    if total < config.min_refunds_for_alert:
        return []
    reversed_count = base.filter(CommissionEvent.status == CommissionEventStatus.REVERSED).count()
    rate = reversed_count / total * 100
    if rate <= config.max_refund_rate_pct:
        return []
    severity = (
        FraudSeverity.HIGH if rate > config.max_refund_rate_pct * 2 else FraudSeverity.MEDIUM
    )
    return [
        FraudSignal(
            FraudAlertType.REFUND_ABUSE,
            severity,
            f"Refund rate {rate:.1f}% exceeds threshold {config.max_refund_rate_pct}%",
            {"refund_rate": round(rate, 1), "reversed": reversed_count, "total": total},
        )
    ]


def check_self_referral(
    db: Session, *, affiliate: Affiliate, patient_id: UUID | None
) -> list[FraudSignal]:
    if patient_id is None or not affiliate.email:
        return []
    patient = db.get(Patient, patient_id)
    if not patient or not patient.email:
        return []
    if patient.email.strip().lower() != affiliate.email.strip().lower():
        return []
    return [
        FraudSignal(
            FraudAlertType.SELF_REFERRAL,
            FraudSeverity.CRITICAL,
            "Affiliate email matches patient email",
            {"patient_id": str(patient_id)},
        )
    ]


def score_signals(signals: list[FraudSignal], *, review_threshold: int = 25) -> tuple[int, str]:
    """Sum severity weights (capped at 100) and recommend approve / review / reject."""
    score = min(MAX_RISK_SCORE, sum(SEVERITY_SCORES[signal.severity] for signal in signals))
    severities = {signal.severity for signal in signals}
    if FraudSeverity.CRITICAL in severities:
        return score, RECOMMEND_REJECT
    if score >= review_threshold or FraudSeverity.HIGH in severities:
        return score, RECOMMEND_REVIEW
    return score, RECOMMEND_APPROVE


# =============================================================================
# Conversion evaluation
# =============================================================================


def evaluate_conversion(
    db: Session,
    event: CommissionEvent,
    *,
    affiliate: Affiliate,
    ip_hash: str | None = None,
    now: datetime | None = None,
) -> FraudCheckResult:
    """
    Run every check for a freshly flushed conversion event.

    Alerts are persisted against the event. With auto_hold_on_high_risk a
    non-approve recommendation puts the event ON_HOLD; with
    auto_suspend_on_critical a CRITICAL signal suspends the affiliate.
    Caller commits.
    """
    now = now or _now_utc()
    config = get_fraud_config(db, event.clinic_id)

    signals: list[FraudSignal] = []
    signals += check_self_referral(db, affiliate=affiliate, patient_id=event.patient_id)
    signals += check_velocity(
        db, config, clinic_id=event.clinic_id, affiliate_id=affiliate.id, now=now
    )
    signals += check_duplicate_ip(
        db, config, clinic_id=event.clinic_id, affiliate_id=affiliate.id, ip_hash=ip_hash, now=now
    )
    signals += check_refund_rate(
        db, config, clinic_id=event.clinic_id, affiliate_id=affiliate.id, now=now
    )

    score, recommendation = score_signals(
        signals, review_threshold=config.high_risk_score_threshold
    )
    result = FraudCheckResult(signals=signals, risk_score=score, recommendation=recommendation)
    if not signals:
        return result

    for signal in signals:
        alert = FraudAlert(
            clinic_id=event.clinic_id,
            affiliate_id=affiliate.id,
            commission_event_id=event.id,
            alert_type=signal.alert_type,
            severity=signal.severity,
            risk_score=score,
            description=signal.description,
            evidence=signal.evidence,
            affected_amount_cents=event.event_amount_cents,
        )
        db.add(alert)
        result.alerts.append(alert)

    logger.warning(
        "Fraud signals for commission_event=%s affiliate=%s score=%s recommendation=%s",
        event.id,
        affiliate.id,
        score,
        recommendation,
    )

    if config.auto_hold_on_high_risk and recommendation != RECOMMEND_APPROVE:
        event.status = CommissionEventStatus.ON_HOLD
        event.hold_reason = "fraud"
        result.held = True

    if config.auto_suspend_on_critical and any(
        signal.severity == FraudSeverity.CRITICAL for signal in signals
    ):
        affiliate.status = AffiliateStatus.SUSPENDED
        logger.warning("Affiliate %s auto-suspended on critical fraud signal", affiliate.id)

    db.flush()
    return result


def is_event_held(db: Session, event: CommissionEvent) -> bool:
    """An OPEN or CONFIRMED_FRAUD alert referencing the event blocks payout."""
    return (
        db.query(FraudAlert.id)
        .filter(
            FraudAlert.commission_event_id == event.id,
            FraudAlert.status.in_(HOLDING_FRAUD_ALERT_STATUSES),
        )
        .first()
        is not None
    )


# =============================================================================
# Alert management
# =============================================================================


def list_alerts(
    db: Session,
    *,
    clinic_id: UUID,
    status: FraudAlertStatus | None = None,
    affiliate_id: UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[FraudAlert], int]:
    query = db.query(FraudAlert).filter(FraudAlert.clinic_id == clinic_id)
    if status:
        query = query.filter(FraudAlert.status == status)
    if affiliate_id:
        query = query.filter(FraudAlert.affiliate_id == affiliate_id)
    total = query.count()
    items = query.order_by(FraudAlert.created_at.desc()).offset(offset).limit(limit).all()
    return items, total


def resolve_alert(
    db: Session,
    *,
    clinic_id: UUID,
    alert_id: UUID,
    status: FraudAlertStatus,
    notes: str | None = None,
    actor_user_id: UUID | None = None,
) -> FraudAlert:
    """
    Move an alert out of OPEN.

    CONFIRMED_FRAUD voids the linked event unless it was already paid.
    FALSE_POSITIVE / DISMISSED release a fraud-held event back to PENDING
    once no other holding alert references it.
    """
    if status not in RESOLUTION_STATUSES:
        raise HTTPException(status_code=422, detail=f"Cannot resolve an alert to {status.value}")

    alert = (
        db.query(FraudAlert)
        .filter(FraudAlert.clinic_id == clinic_id, FraudAlert.id == alert_id)
        .first()
    )
    if not alert:
        raise HTTPException(status_code=404, detail="Fraud alert not found")

    alert.status = status
    alert.resolution_notes = notes
    if status != FraudAlertStatus.INVESTIGATING:
        alert.resolved_at = _now_utc()
        alert.resolved_by = actor_user_id

    event = db.get(CommissionEvent, alert.commission_event_id) if alert.commission_event_id else None
    if event is not None:
        db.flush()
        if status == FraudAlertStatus.CONFIRMED_FRAUD:
            if event.status != CommissionEventStatus.PAID:
                event.status = CommissionEventStatus.VOIDED
                event.voided_at = _now_utc()
                event.reversal_reason = "Confirmed fraud"
                payout_service.detach_event(db, event)
        elif (
            status in {FraudAlertStatus.FALSE_POSITIVE, FraudAlertStatus.DISMISSED}
            and event.status == CommissionEventStatus.ON_HOLD
            and event.hold_reason == "fraud"
            and not is_event_held(db, event)
        ):
            event.status = CommissionEventStatus.PENDING
            event.hold_reason = None

    db.commit()
    db.refresh(alert)
    logger.info("Fraud alert %s resolved as %s", alert.id, status.value)
    return alert
