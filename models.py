"""
CADOK Trade Security - Database Schema
======================================

Schema for the trust, risk and anonymized-delivery core of the barter platform:
- Trust profiles derived from each participant's trade history
- Trades gated by a frozen risk tier and its verification constraints
- Per-participant photo, shipment and delivery confirmations
- Append-only dispute reports and trade timeline
- Redirection records holding encrypted real destinations behind decoy labels
- Security incidents raised for manual review

Real postal addresses are never stored in plaintext.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase, relationship, validates

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TradeStatus(Enum):
    """Trade security lifecycle states"""
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    VERIFICATION_PENDING = "verification_pending"
    VERIFICATION_COMPLETE = "verification_complete"
    SHIPPING_PENDING = "shipping_pending"
    SHIPPING_CONFIRMED = "shipping_confirmed"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class RiskTier(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SecurityConstraint(Enum):
    """Verification steps a trade must pass, chosen from its risk tier"""
    PHOTOS = "photos"
    TRACKING = "tracking"
    MANUAL_CONFIRMATION = "manual_confirmation"


class TradeOutcome(Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ShippingDirection(Enum):
    """A_TO_B is the parcel participant A sends to participant B"""
    A_TO_B = "a_to_b"
    B_TO_A = "b_to_a"


class RedirectionStatus(Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class DisputeReason(Enum):
    NOT_SHIPPED = "not_shipped"
    WRONG_ITEM = "wrong_item"
    DAMAGED = "damaged"
    COUNTERFEIT = "counterfeit"
    COMMUNICATION_ISSUE = "communication_issue"
    OTHER = "other"


class DeliverySource(Enum):
    PARTICIPANT = "participant"
    CARRIER = "carrier"


class IncidentType(Enum):
    ADDRESS_INTEGRITY_FAILURE = "address_integrity_failure"
    INVALID_WEBHOOK_SIGNATURE = "invalid_webhook_signature"


# ============================================================================
# TRUST
# ============================================================================

class TrustProfile(Base):
    """Per-user trade history counters and the derived trust score"""
    __tablename__ = "trust_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), unique=True, nullable=False)
    successful_trades = Column(Integer, default=0, nullable=False)
    failed_trades = Column(Integer, default=0, nullable=False)
    disputed_trades = Column(Integer, default=0, nullable=False)

    # Ratings received from counterparties on completed trades
    ratings_received = Column(Integer, default=0, nullable=False)
    rating_total = Column(Integer, default=0, nullable=False)

    # Weighted by dispute reason each time the user is found at fault
    violation_points = Column(Integer, default=0, nullable=False)

    # Mirrored from the user directory on every sync
    account_age_days = Column(Integer, default=0, nullable=False)
    verified_email = Column(Boolean, default=False, nullable=False)
    verified_phone = Column(Boolean, default=False, nullable=False)

    trust_score = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("successful_trades >= 0", name="ck_trust_successful_non_negative"),
        CheckConstraint("failed_trades >= 0", name="ck_trust_failed_non_negative"),
        CheckConstraint("disputed_trades >= 0", name="ck_trust_disputed_non_negative"),
        CheckConstraint("ratings_received >= 0", name="ck_trust_ratings_non_negative"),
        CheckConstraint("rating_total >= 0", name="ck_trust_rating_total_non_negative"),
        CheckConstraint("violation_points >= 0", name="ck_trust_violations_non_negative"),
        CheckConstraint("account_age_days >= 0", name="ck_trust_age_non_negative"),
        CheckConstraint("trust_score >= 0 AND trust_score <= 100", name="ck_trust_score_range"),
    )

    @property
    def average_rating(self) -> Optional[float]:
        if not self.ratings_received:
            return None
        return round(self.rating_total / self.ratings_received, 1)

    def __repr__(self):
        return (
            f"<TrustProfile(user_id={self.user_id}, score={self.trust_score}, "
            f"ok={self.successful_trades}, failed={self.failed_trades}, disputed={self.disputed_trades})>"
        )


# ============================================================================
# TRADES
# ============================================================================

class Trade(Base):
    """Two-party barter trade moving through the security state machine"""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True)
    trade_id = Column(String(32), unique=True, nullable=False)
    participant_a = Column(String(64), nullable=False)
    participant_b = Column(String(64), nullable=False)
    item_a = Column(String(128), nullable=False)
    item_b = Column(String(128), nullable=False)

    status = Column(String(32), default=TradeStatus.PROPOSED.value, nullable=False)

    # Frozen at acceptance
    risk_tier = Column(String(16), nullable=True)
    required_constraints = Column(JSON, nullable=True)
    trust_score_a = Column(Integer, nullable=True)
    trust_score_b = Column(Integer, nullable=True)
    accepted_at = Column(DateTime, nullable=True)

    # Terminal bookkeeping
    cancelled_by = Column(String(64), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    resolution_outcome = Column(String(16), nullable=True)
    at_fault_user_id = Column(String(64), nullable=True)
    resolved_by = Column(String(64), nullable=True)
    dispute_resolved_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    photo_submissions = relationship(
        "TradePhotoSubmission", back_populates="trade", cascade="all, delete-orphan"
    )
    shipment_confirmations = relationship(
        "TradeShipmentConfirmation", back_populates="trade", cascade="all, delete-orphan"
    )
    delivery_confirmations = relationship(
        "TradeDeliveryConfirmation", back_populates="trade", cascade="all, delete-orphan"
    )
    disputes = relationship(
        "TradeDispute", back_populates="trade", cascade="all, delete-orphan",
        order_by="TradeDispute.id"
    )
    timeline = relationship(
        "TradeTimelineEvent", back_populates="trade", cascade="all, delete-orphan",
        order_by="TradeTimelineEvent.id"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_trades_participant_a', 'participant_a'),
        Index('ix_trades_participant_b', 'participant_b'),
        Index('ix_trades_status', 'status'),
        CheckConstraint("participant_a <> participant_b", name="ck_trades_distinct_participants"),
    )

    @validates("risk_tier", "required_constraints")
    def _validate_frozen_risk(self, key, value):
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValueError(f"Trade {self.trade_id} {key} is frozen at acceptance")
        return value

    @property
    def trade_status(self) -> TradeStatus:
        return TradeStatus(self.status)

    @property
    def constraints(self) -> frozenset:
        return frozenset(SecurityConstraint(c) for c in (self.required_constraints or []))

    def requires(self, constraint: SecurityConstraint) -> bool:
        return constraint in self.constraints

    def participants(self) -> tuple:
        return (self.participant_a, self.participant_b)

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participants()

    def counterparty_of(self, user_id: str) -> str:
        return self.participant_b if user_id == self.participant_a else self.participant_a

    def outgoing_direction(self, user_id: str) -> ShippingDirection:
        """Direction of the parcel this participant ships"""
        return ShippingDirection.A_TO_B if user_id == self.participant_a else ShippingDirection.B_TO_A

    def __repr__(self):
        return f"<Trade(trade_id={self.trade_id}, status={self.status}, risk_tier={self.risk_tier})>"


class TradePhotoSubmission(Base):
    """Item photos for one participant, replaced on resubmission"""
    __tablename__ = "trade_photo_submissions"

    id = Column(Integer, primary_key=True)
    trade_id = Column(String(32), ForeignKey("trades.trade_id"), nullable=False)
    participant_id = Column(String(64), nullable=False)
    image_refs = Column(JSON, nullable=False)
    submitted_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    trade = relationship("Trade", back_populates="photo_submissions")

    __table_args__ = (
        UniqueConstraint('trade_id', 'participant_id', name='uq_photo_submission_participant'),
    )

    def __repr__(self):
        return f"<TradePhotoSubmission(trade_id={self.trade_id}, participant_id={self.participant_id})>"


class TradeShipmentConfirmation(Base):
    __tablename__ = "trade_shipment_confirmations"

    id = Column(Integer, primary_key=True)
    trade_id = Column(String(32), ForeignKey("trades.trade_id"), nullable=False)
    participant_id = Column(String(64), nullable=False)
    tracking_number = Column(String(128), nullable=True)
    confirmed_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    trade = relationship("Trade", back_populates="shipment_confirmations")

    __table_args__ = (
        UniqueConstraint('trade_id', 'participant_id', name='uq_shipment_confirmation_participant'),
    )

    def __repr__(self):
        return f"<TradeShipmentConfirmation(trade_id={self.trade_id}, participant_id={self.participant_id})>"


class TradeDeliveryConfirmation(Base):
    """Receipt of the counterparty's item; carrier scans carry no rating"""
    __tablename__ = "trade_delivery_confirmations"

    id = Column(Integer, primary_key=True)
    trade_id = Column(String(32), ForeignKey("trades.trade_id"), nullable=False)
    participant_id = Column(String(64), nullable=False)
    rating = Column(Integer, nullable=True)
    comment = Column(Text, nullable=True)
    source = Column(String(16), default=DeliverySource.PARTICIPANT.value, nullable=False)
    confirmed_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    trade = relationship("Trade", back_populates="delivery_confirmations")

    __table_args__ = (
        UniqueConstraint('trade_id', 'participant_id', name='uq_delivery_confirmation_participant'),
        CheckConstraint("rating IS NULL OR (rating >= 1 AND rating <= 5)", name="ck_delivery_rating_range"),
    )

    def __repr__(self):
        return (
            f"<TradeDeliveryConfirmation(trade_id={self.trade_id}, participant_id={self.participant_id}, "
            f"rating={self.rating})>"
        )


class TradeDispute(Base):
    """Problem report; rows are only ever appended"""
    __tablename__ = "trade_disputes"

    id = Column(Integer, primary_key=True)
    trade_id = Column(String(32), ForeignKey("trades.trade_id"), nullable=False)
    reporter_id = Column(String(64), nullable=False)
    reason = Column(String(32), nullable=False)
    description = Column(Text, nullable=False)
    evidence = Column(JSON, nullable=False, default=list)
    reported_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    trade = relationship("Trade", back_populates="disputes")

    __table_args__ = (
        Index('ix_trade_disputes_trade', 'trade_id'),
    )

    def __repr__(self):
        return f"<TradeDispute(trade_id={self.trade_id}, reporter_id={self.reporter_id}, reason={self.reason})>"


class TradeTimelineEvent(Base):
    """Audit trail of every status change and participant step"""
    __tablename__ = "trade_timeline_events"

    id = Column(Integer, primary_key=True)
    trade_id = Column(String(32), ForeignKey("trades.trade_id"), nullable=False)
    step = Column(String(48), nullable=False)
    user_id = Column(String(64), nullable=True)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    trade = relationship("Trade", back_populates="timeline")

    __table_args__ = (
        Index('ix_trade_timeline_trade', 'trade_id'),
    )

    def __repr__(self):
        return f"<TradeTimelineEvent(trade_id={self.trade_id}, step={self.step}, to_status={self.to_status})>"


# ============================================================================
# REDIRECTION
# ============================================================================

class RedirectionRecord(Base):
    """Disposable code standing in for a real destination on a shipping label"""
    __tablename__ = "redirection_records"

    id = Column(Integer, primary_key=True)
    redirection_code = Column(String(48), unique=True, nullable=False)
    trade_id = Column(String(32), ForeignKey("trades.trade_id"), nullable=False)
    direction = Column(String(8), nullable=False)
    sender_id = Column(String(64), nullable=True)
    recipient_id = Column(String(64), nullable=True)

    # Decoy label printed by the sender
    decoy_name = Column(String(128), nullable=False)
    decoy_attention = Column(String(64), nullable=False)
    decoy_street = Column(String(255), nullable=False)
    decoy_postal_code = Column(String(16), nullable=False)
    decoy_city = Column(String(128), nullable=False)
    decoy_country = Column(String(64), nullable=False)

    # Fernet token, the only form in which the real destination is stored
    encrypted_destination = Column(Text, nullable=False)

    status = Column(String(16), default=RedirectionStatus.PENDING.value, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('trade_id', 'direction', name='uq_redirection_trade_direction'),
        Index('ix_redirection_status_expiry', 'status', 'expires_at'),
    )

    @property
    def redirection_status(self) -> RedirectionStatus:
        return RedirectionStatus(self.status)

    def decoy_address(self) -> dict:
        return {
            "name": self.decoy_name,
            "attention": self.decoy_attention,
            "street": self.decoy_street,
            "postal_code": self.decoy_postal_code,
            "city": self.decoy_city,
            "country": self.decoy_country,
        }

    def decoy_label_lines(self) -> list:
        return [
            self.decoy_name,
            self.decoy_attention,
            self.decoy_street,
            f"{self.decoy_postal_code} {self.decoy_city}",
            self.decoy_country.upper(),
        ]

    def __repr__(self):
        return f"<RedirectionRecord(code={self.redirection_code}, trade_id={self.trade_id}, status={self.status})>"


class SecurityIncident(Base):
    """Event requiring manual review"""
    __tablename__ = "security_incidents"

    id = Column(Integer, primary_key=True)
    incident_type = Column(String(48), nullable=False)
    severity = Column(String(16), default="high", nullable=False)
    redirection_code = Column(String(48), nullable=True)
    trade_id = Column(String(32), nullable=True)
    details = Column(JSON, nullable=True)
    reviewed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index('ix_security_incidents_type', 'incident_type'),
        Index('ix_security_incidents_reviewed', 'reviewed'),
    )

    def __repr__(self):
        return f"<SecurityIncident(type={self.incident_type}, code={self.redirection_code}, reviewed={self.reviewed})>"
