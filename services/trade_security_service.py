"""
Trade Security Service
Drives a barter trade through its security lifecycle:

    PROPOSED -> ACCEPTED -> VERIFICATION_PENDING -> VERIFICATION_COMPLETE
      -> SHIPPING_PENDING -> SHIPPING_CONFIRMED -> DELIVERED -> COMPLETED

with CANCELLED available until both parcels ship and DISPUTED once they have.

Every public operation is one unit of work: the trade row is locked, guards are
checked before anything is written, automatic transitions cascade inside the
same transaction, and notifications go out only after the commit.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import Config
from models import (
    Trade, TradeStatus, RiskTier, SecurityConstraint, TradeOutcome, ShippingDirection,
    DisputeReason, DeliverySource, TradePhotoSubmission, TradeShipmentConfirmation,
    TradeDeliveryConfirmation, TradeDispute, TradeTimelineEvent, RedirectionRecord,
)
from services.collaborators import NotificationDispatcher, UserDirectory
from services.redirection_engine import RedirectionEngine
from services.trust_risk_engine import TrustRiskEngine
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.entity_state_machines import TradeStateMachine
from utils.exception_handler import (
    ValidationError,
    NotParticipantError,
    InvalidTransitionError,
    TradeNotFoundError,
    TradeCompletionError,
    ConcurrentModificationError,
    translate_stale_data,
)
from utils.id_generator import generate_trade_id

logger = logging.getLogger(__name__)

MODERATION_RECIPIENT = "moderation"

# Notification sent to both participants on entering a status
STATUS_EVENTS = {
    TradeStatus.ACCEPTED: "trade_accepted",
    TradeStatus.VERIFICATION_PENDING: "photos_required",
    TradeStatus.SHIPPING_PENDING: "shipping_labels_ready",
    TradeStatus.SHIPPING_CONFIRMED: "parcels_in_transit",
    TradeStatus.COMPLETED: "trade_completed",
    TradeStatus.CANCELLED: "trade_cancelled",
    TradeStatus.DISPUTED: "trade_disputed",
}


@dataclass(frozen=True)
class TradeSummary:
    """Snapshot of a trade taken inside the transaction that changed it"""
    trade_id: str
    status: TradeStatus
    participant_a: str
    participant_b: str
    risk_tier: Optional[RiskTier]
    required_constraints: FrozenSet[SecurityConstraint]
    dispute_count: int
    version: int


@dataclass
class _Outbox:
    """Notifications collected during a unit of work, sent after commit"""
    messages: List[Tuple[str, str, Dict[str, Any]]] = field(default_factory=list)

    def add(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        self.messages.append((user_id, event, payload))


class TradeSecurityService:
    """State machine driver for trades, wired to the trust and redirection engines"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        user_directory: UserDirectory,
        notifier: Optional[NotificationDispatcher] = None,
        redirection_engine: Optional[RedirectionEngine] = None,
        trust_engine: Optional[TrustRiskEngine] = None,
    ):
        self.session_factory = session_factory
        self.user_directory = user_directory
        self.notifier = notifier
        self.redirection_engine = redirection_engine or RedirectionEngine(session_factory)
        self.trust_engine = trust_engine or TrustRiskEngine(user_directory)

    # ------------------------------------------------------------------
    # Unit of work plumbing
    # ------------------------------------------------------------------

    def _run(self, trade_id: str, operation: Callable[[Session, Trade, _Outbox], Any]) -> TradeSummary:
        outbox = _Outbox()
        with atomic_transaction(session_factory=self.session_factory) as session:
            trade = self._load_trade(session, trade_id)
            operation(session, trade, outbox)
            session.flush()
            summary = self._summarize(session, trade)
        self._dispatch(outbox)
        return summary

    @staticmethod
    def _load_trade(session: Session, trade_id: str) -> Trade:
        trade = (
            session.query(Trade)
            .filter(Trade.trade_id == trade_id)
            .with_for_update()
            .one_or_none()
        )
        if trade is None:
            raise TradeNotFoundError(trade_id)
        return trade

    @staticmethod
    def _summarize(session: Session, trade: Trade) -> TradeSummary:
        dispute_count = session.query(TradeDispute).filter(TradeDispute.trade_id == trade.trade_id).count()
        return TradeSummary(
            trade_id=trade.trade_id,
            status=trade.trade_status,
            participant_a=trade.participant_a,
            participant_b=trade.participant_b,
            risk_tier=RiskTier(trade.risk_tier) if trade.risk_tier else None,
            required_constraints=trade.constraints,
            dispute_count=dispute_count,
            version=trade.version,
        )

    def _dispatch(self, outbox: _Outbox) -> None:
        if self.notifier is None:
            return
        for user_id, event, payload in outbox.messages:
            try:
                self.notifier.notify(user_id, event, payload)
            except Exception as e:
                # Best effort: the transition is already committed
                logger.error(f"❌ NOTIFICATION_FAILED: {event} to {user_id}: {type(e).__name__}: {e}")

    @staticmethod
    def _require_participant(trade: Trade, user_id: str, action: str) -> None:
        if not trade.is_participant(user_id):
            logger.warning(f"🚫 NOT_PARTICIPANT: {user_id} tried to {action} on {trade.trade_id}")
            raise NotParticipantError(trade.trade_id, user_id, action)

    def _record_step(
        self,
        session: Session,
        trade: Trade,
        step: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Timeline entry for a participant step; touching the trade bumps its version"""
        trade.updated_at = get_naive_utc_now()
        session.add(TradeTimelineEvent(
            trade_id=trade.trade_id,
            step=step,
            user_id=user_id,
            details=details or {},
        ))

    def _transition(
        self,
        session: Session,
        trade: Trade,
        target: TradeStatus,
        outbox: _Outbox,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        via_resolution: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        current = trade.trade_status
        TradeStateMachine.validate_transition(current, target, action=action, via_resolution=via_resolution)

        trade.status = target.value
        trade.updated_at = get_naive_utc_now()
        session.add(TradeTimelineEvent(
            trade_id=trade.trade_id,
            step=f"status_{target.value}",
            user_id=user_id,
            from_status=current.value,
            to_status=target.value,
            details=details or {},
        ))
        # Flush per transition so each status change is its own versioned UPDATE
        session.flush()
        logger.info(f"🔄 TRADE_TRANSITION: {trade.trade_id} {current.value} -> {target.value} by={user_id or 'system'}")

        event = STATUS_EVENTS.get(target)
        if event:
            payload = {"trade_id": trade.trade_id, "status": target.value, **(details or {})}
            for participant in trade.participants():
                outbox.add(participant, event, payload)

    # ------------------------------------------------------------------
    # Automatic progression
    # ------------------------------------------------------------------

    def _participants_with(self, session: Session, model, trade: Trade) -> set:
        rows = session.query(model.participant_id).filter(model.trade_id == trade.trade_id).all()
        return {row[0] for row in rows}

    def _advance(self, session: Session, trade: Trade, outbox: _Outbox) -> None:
        """Apply every automatic transition whose guard is now satisfied"""
        session.flush()
        everyone = set(trade.participants())

        while True:
            status = trade.trade_status

            if status == TradeStatus.ACCEPTED:
                self._transition(session, trade, TradeStatus.VERIFICATION_PENDING, outbox)
            elif status == TradeStatus.VERIFICATION_PENDING:
                if trade.requires(SecurityConstraint.PHOTOS) and \
                        self._participants_with(session, TradePhotoSubmission, trade) != everyone:
                    return
                self._transition(session, trade, TradeStatus.VERIFICATION_COMPLETE, outbox)
            elif status == TradeStatus.VERIFICATION_COMPLETE:
                self._transition(session, trade, TradeStatus.SHIPPING_PENDING, outbox)
                self._mint_redirections(session, trade)
            elif status == TradeStatus.SHIPPING_PENDING:
                if self._participants_with(session, TradeShipmentConfirmation, trade) != everyone:
                    return
                self._transition(session, trade, TradeStatus.SHIPPING_CONFIRMED, outbox)
            elif status == TradeStatus.SHIPPING_CONFIRMED:
                if self._participants_with(session, TradeDeliveryConfirmation, trade) != everyone:
                    return
                self._transition(session, trade, TradeStatus.DELIVERED, outbox)
            elif status == TradeStatus.DELIVERED:
                self._complete(session, trade, outbox)
                return
            else:
                return

    def _mint_redirections(self, session: Session, trade: Trade) -> None:
        """One code per parcel; each carries the recipient's real address"""
        parcels = (
            (ShippingDirection.A_TO_B, trade.participant_a, trade.participant_b),
            (ShippingDirection.B_TO_A, trade.participant_b, trade.participant_a),
        )
        for direction, sender, recipient in parcels:
            address = self.user_directory.get_shipping_address(recipient)
            self.redirection_engine.create_redirection(
                session,
                trade.trade_id,
                direction,
                address,
                sender_id=sender,
                recipient_id=recipient,
            )

    def _complete(
        self,
        session: Session,
        trade: Trade,
        outbox: _Outbox,
        at_fault_user_id: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> None:
        """Terminal COMPLETED plus both trust profile updates, in the caller's transaction"""
        via_resolution = trade.trade_status == TradeStatus.DISPUTED
        self._transition(
            session, trade, TradeStatus.COMPLETED, outbox,
            user_id=resolved_by, via_resolution=via_resolution,
        )
        trade.completed_at = get_naive_utc_now()
        trade.resolution_outcome = TradeOutcome.COMPLETED.value
        self._apply_outcome(session, trade, TradeOutcome.COMPLETED, at_fault_user_id)

    def _apply_outcome(
        self, session: Session, trade: Trade, outcome: TradeOutcome, at_fault_user_id: Optional[str]
    ) -> None:
        try:
            ratings = self._ratings_received(session, trade) if outcome == TradeOutcome.COMPLETED else {}
            violation = self._violation_against(session, trade, at_fault_user_id) if at_fault_user_id else None
            profile_a = self.trust_engine.get_or_create_profile(session, trade.participant_a, for_update=True)
            profile_b = self.trust_engine.get_or_create_profile(session, trade.participant_b, for_update=True)
            self.trust_engine.record_outcome(
                session, profile_a, profile_b, outcome, at_fault_user_id, ratings=ratings, violation=violation
            )
        except Exception as e:
            logger.error(f"❌ TRADE_OUTCOME_FAILED: {trade.trade_id} {outcome.value}: {type(e).__name__}: {e}")
            raise TradeCompletionError(trade.trade_id, e) from e

    @staticmethod
    def _ratings_received(session: Session, trade: Trade) -> Dict[str, int]:
        """Rating each participant received from the other; carrier scans carry none"""
        confirmations = (
            session.query(TradeDeliveryConfirmation)
            .filter(
                TradeDeliveryConfirmation.trade_id == trade.trade_id,
                TradeDeliveryConfirmation.rating.isnot(None),
            )
            .all()
        )
        return {trade.counterparty_of(c.participant_id): c.rating for c in confirmations}

    @staticmethod
    def _violation_against(session: Session, trade: Trade, at_fault_user_id: str) -> DisputeReason:
        """Most heavily weighted reason the other party reported; OTHER when nothing was reported"""
        reasons = [
            DisputeReason(reason)
            for (reason,) in session.query(TradeDispute.reason).filter(
                TradeDispute.trade_id == trade.trade_id,
                TradeDispute.reporter_id != at_fault_user_id,
            )
        ]
        if not reasons:
            return DisputeReason.OTHER
        return max(reasons, key=TrustRiskEngine.violation_penalty)

    # ------------------------------------------------------------------
    # Participant operations
    # ------------------------------------------------------------------

    def propose_trade(self, proposer_id: str, counterparty_id: str, item_a: str, item_b: str) -> TradeSummary:
        """Open a trade in PROPOSED; the counterparty must accept it"""
        for name, value in (("proposer_id", proposer_id), ("counterparty_id", counterparty_id),
                            ("item_a", item_a), ("item_b", item_b)):
            if not value or not str(value).strip():
                raise ValidationError(f"{name} is required", field=name)
        if proposer_id == counterparty_id:
            raise ValidationError("A trade needs two different participants", field="counterparty_id")

        outbox = _Outbox()
        with atomic_transaction(session_factory=self.session_factory) as session:
            trade = Trade(
                trade_id=generate_trade_id(),
                participant_a=proposer_id,
                participant_b=counterparty_id,
                item_a=item_a,
                item_b=item_b,
                status=TradeStatus.PROPOSED.value,
            )
            session.add(trade)
            session.flush()
            self._record_step(session, trade, "trade_created", proposer_id, {"item_a": item_a, "item_b": item_b})
            session.flush()
            summary = self._summarize(session, trade)
            outbox.add(counterparty_id, "trade_proposed", {"trade_id": trade.trade_id, "proposer_id": proposer_id})

        logger.info(f"🆕 TRADE_PROPOSED: {summary.trade_id} {proposer_id} -> {counterparty_id}")
        self._dispatch(outbox)
        return summary

    @translate_stale_data()
    def accept_trade(self, trade_id: str, user_id: str) -> TradeSummary:
        """Counterparty accepts; risk is assessed once and frozen on the trade"""

        def operation(session: Session, trade: Trade, outbox: _Outbox) -> None:
            if user_id != trade.participant_b:
                self._require_participant(trade, user_id, "accept trade")
                raise NotParticipantError(trade.trade_id, user_id, "accept a trade they proposed")
            TradeStateMachine.validate_transition(trade.trade_status, TradeStatus.ACCEPTED, action="accept trade")

            assessment = self.trust_engine.assess_trade(session, trade.participant_a, trade.participant_b)
            trade.risk_tier = assessment.risk_tier.value
            trade.required_constraints = assessment.constraint_values()
            trade.trust_score_a = assessment.scores["a"]
            trade.trust_score_b = assessment.scores["b"]
            trade.accepted_at = get_naive_utc_now()

            self._transition(
                session, trade, TradeStatus.ACCEPTED, outbox, user_id=user_id,
                details={
                    "risk_tier": assessment.risk_tier.value,
                    "required_constraints": assessment.constraint_values(),
                    "recommendation": assessment.recommendation,
                },
            )
            self._advance(session, trade, outbox)

        return self._run(trade_id, operation)

    @translate_stale_data()
    def submit_photos(self, trade_id: str, user_id: str, image_refs: List[str]) -> TradeSummary:
        """Upsert this participant's item photos during verification"""

        def operation(session: Session, trade: Trade, outbox: _Outbox) -> None:
            self._require_participant(trade, user_id, "submit photos")
            TradeStateMachine.require_status(
                trade.trade_status, {TradeStatus.VERIFICATION_PENDING}, "submit photos"
            )
            refs = self._validate_image_refs(image_refs)

            submission = (
                session.query(TradePhotoSubmission)
                .filter(
                    TradePhotoSubmission.trade_id == trade.trade_id,
                    TradePhotoSubmission.participant_id == user_id,
                )
                .one_or_none()
            )
            if submission is None:
                session.add(TradePhotoSubmission(trade_id=trade.trade_id, participant_id=user_id, image_refs=refs))
            else:
                submission.image_refs = refs
                submission.submitted_at = get_naive_utc_now()

            self._record_step(session, trade, "photos_submitted", user_id, {"count": len(refs)})
            outbox.add(trade.counterparty_of(user_id), "counterparty_photos_submitted", {"trade_id": trade.trade_id})
            self._advance(session, trade, outbox)

        return self._run(trade_id, operation)

    @staticmethod
    def _validate_image_refs(image_refs: List[str]) -> List[str]:
        if isinstance(image_refs, str) or not isinstance(image_refs, (list, tuple)):
            raise ValidationError("image_refs must be a list of image references", field="image_refs")
        refs = [str(ref).strip() for ref in image_refs if ref is not None and str(ref).strip()]
        if not refs:
            raise ValidationError("At least one photo is required", field="image_refs")
        if len(refs) > Config.MAX_PHOTOS_PER_SUBMISSION:
            raise ValidationError(
                f"At most {Config.MAX_PHOTOS_PER_SUBMISSION} photos per submission", field="image_refs"
            )
        return refs

    @translate_stale_data()
    def confirm_shipment(self, trade_id: str, user_id: str, tracking_number: Optional[str] = None) -> TradeSummary:
        """Upsert this participant's shipment confirmation"""

        def operation(session: Session, trade: Trade, outbox: _Outbox) -> None:
            self._require_participant(trade, user_id, "confirm shipment")
            TradeStateMachine.require_status(
                trade.trade_status, {TradeStatus.SHIPPING_PENDING}, "confirm shipment"
            )
            tracking = (tracking_number or "").strip() or None
            if tracking is None and trade.requires(SecurityConstraint.TRACKING):
                raise ValidationError("A tracking number is required for this trade", field="tracking_number")

            confirmation = (
                session.query(TradeShipmentConfirmation)
                .filter(
                    TradeShipmentConfirmation.trade_id == trade.trade_id,
                    TradeShipmentConfirmation.participant_id == user_id,
                )
                .one_or_none()
            )
            if confirmation is None:
                session.add(TradeShipmentConfirmation(
                    trade_id=trade.trade_id, participant_id=user_id, tracking_number=tracking,
                ))
            else:
                confirmation.tracking_number = tracking
                confirmation.confirmed_at = get_naive_utc_now()

            self._record_step(
                session, trade, "shipping_confirmed", user_id,
                {"direction": trade.outgoing_direction(user_id).value, "tracked": tracking is not None},
            )
            outbox.add(trade.counterparty_of(user_id), "counterparty_shipped", {"trade_id": trade.trade_id})
            self._advance(session, trade, outbox)

        return self._run(trade_id, operation)

    @translate_stale_data()
    def confirm_delivery(
        self, trade_id: str, user_id: str, rating: int, comment: Optional[str] = None
    ) -> TradeSummary:
        """
        Upsert this participant's receipt of the counterparty's item.

        Accepted while SHIPPING_CONFIRMED (both confirmations complete the trade)
        and while DISPUTED (recorded, never advances).
        """

        def operation(session: Session, trade: Trade, outbox: _Outbox) -> None:
            self._require_participant(trade, user_id, "confirm delivery")
            TradeStateMachine.require_status(
                trade.trade_status, {TradeStatus.SHIPPING_CONFIRMED, TradeStatus.DISPUTED}, "confirm delivery"
            )
            clean_comment = self._validate_rating(rating, comment)

            self._upsert_delivery(session, trade, user_id, rating, clean_comment, DeliverySource.PARTICIPANT)
            self._record_step(session, trade, "delivery_confirmed", user_id, {"rating": rating})

            if trade.trade_status == TradeStatus.SHIPPING_CONFIRMED:
                self._advance(session, trade, outbox)
            else:
                logger.info(f"⏸️ DELIVERY_RECORDED_WHILE_DISPUTED: {trade.trade_id} by {user_id}")

        return self._run(trade_id, operation)

    @staticmethod
    def _validate_rating(rating: int, comment: Optional[str]) -> Optional[str]:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer from 1 to 5", field="rating")
        clean_comment = (comment or "").strip() or None
        if rating <= Config.LOW_RATING_COMMENT_THRESHOLD and clean_comment is None:
            raise ValidationError(
                f"A comment is required for ratings of {Config.LOW_RATING_COMMENT_THRESHOLD} or lower",
                field="comment",
            )
        return clean_comment

    @staticmethod
    def _upsert_delivery(
        session: Session,
        trade: Trade,
        user_id: str,
        rating: Optional[int],
        comment: Optional[str],
        source: DeliverySource,
    ) -> TradeDeliveryConfirmation:
        confirmation = (
            session.query(TradeDeliveryConfirmation)
            .filter(
                TradeDeliveryConfirmation.trade_id == trade.trade_id,
                TradeDeliveryConfirmation.participant_id == user_id,
            )
            .one_or_none()
        )
        if confirmation is None:
            confirmation = TradeDeliveryConfirmation(
                trade_id=trade.trade_id, participant_id=user_id,
                rating=rating, comment=comment, source=source.value,
            )
            session.add(confirmation)
        else:
            confirmation.rating = rating
            confirmation.comment = comment
            confirmation.source = source.value
            confirmation.confirmed_at = get_naive_utc_now()
        return confirmation

    def confirm_delivery_by_carrier(self, redirection_code: str) -> TradeSummary:
        """
        Carrier delivery scan for a redirected parcel. Counts as the recipient's
        delivery confirmation only when the trade does not require manual confirmation.
        """
        with atomic_transaction(session_factory=self.session_factory) as session:
            record = RedirectionEngine.get_record(session, redirection_code)
            trade_id = record.trade_id

        def operation(session: Session, trade: Trade, outbox: _Outbox) -> None:
            if trade.requires(SecurityConstraint.MANUAL_CONFIRMATION):
                raise ValidationError(
                    "This trade requires the recipient to confirm delivery manually", field="redirection_code"
                )
            TradeStateMachine.require_status(
                trade.trade_status, {TradeStatus.SHIPPING_CONFIRMED, TradeStatus.DISPUTED}, "record carrier delivery"
            )
            parcel = RedirectionEngine.get_record(session, redirection_code)
            direction = ShippingDirection(parcel.direction)
            recipient = trade.participant_b if direction == ShippingDirection.A_TO_B else trade.participant_a

            existing = (
                session.query(TradeDeliveryConfirmation)
                .filter(
                    TradeDeliveryConfirmation.trade_id == trade.trade_id,
                    TradeDeliveryConfirmation.participant_id == recipient,
                )
                .one_or_none()
            )
            # A participant's own rating is never replaced by a scan
            if existing is None:
                self._upsert_delivery(session, trade, recipient, None, None, DeliverySource.CARRIER)
            self._record_step(
                session, trade, "carrier_delivery_scan", None,
                {"redirection_code": redirection_code, "recipient": recipient},
            )
            outbox.add(recipient, "parcel_delivered", {"trade_id": trade.trade_id})

            if trade.trade_status == TradeStatus.SHIPPING_CONFIRMED:
                self._advance(session, trade, outbox)

        try:
            return self._run(trade_id, operation)
        except StaleDataError as e:
            raise ConcurrentModificationError("Trade", trade_id) from e

    @translate_stale_data()
    def report_problem(
        self,
        trade_id: str,
        user_id: str,
        reason: str,
        description: str,
        evidence: Optional[List[str]] = None,
    ) -> TradeSummary:
        """
        Append a dispute report. The first report after shipment moves the trade to
        DISPUTED; reports on disputed or closed trades are appended only.
        """
        try:
            dispute_reason = DisputeReason(reason.value if isinstance(reason, DisputeReason) else reason)
        except ValueError:
            allowed = ", ".join(r.value for r in DisputeReason)
            raise ValidationError(f"Unknown dispute reason {reason!r}, expected one of: {allowed}", field="reason")
        if not description or not description.strip():
            raise ValidationError("A description of the problem is required", field="description")
        evidence_refs = [str(ref) for ref in (evidence or []) if ref]

        def operation(session: Session, trade: Trade, outbox: _Outbox) -> None:
            self._require_participant(trade, user_id, "report a problem")
            status = trade.trade_status
            append_only = {TradeStatus.DISPUTED} | TradeStateMachine.terminal_states
            if status not in TradeStateMachine.disputable_states and status not in append_only:
                raise InvalidTransitionError(
                    status.value, "report a problem", "problems can be reported once both parcels have shipped"
                )

            session.add(TradeDispute(
                trade_id=trade.trade_id,
                reporter_id=user_id,
                reason=dispute_reason.value,
                description=description.strip(),
                evidence=evidence_refs,
            ))
            # Closed trades only gain the dispute row itself
            if not TradeStateMachine.is_terminal(status):
                self._record_step(session, trade, "problem_reported", user_id, {"reason": dispute_reason.value})

            payload = {"trade_id": trade.trade_id, "reporter_id": user_id, "reason": dispute_reason.value}
            outbox.add(MODERATION_RECIPIENT, "dispute_reported", payload)

            if status in TradeStateMachine.disputable_states:
                self._transition(
                    session, trade, TradeStatus.DISPUTED, outbox, user_id=user_id,
                    action="report a problem", details={"reason": dispute_reason.value},
                )
            logger.warning(f"⚠️ TRADE_PROBLEM_REPORTED: {trade.trade_id} by {user_id} reason={dispute_reason.value}")

        return self._run(trade_id, operation)

    @translate_stale_data()
    def cancel_trade(self, trade_id: str, user_id: str, reason: Optional[str] = None) -> TradeSummary:
        """Either participant may cancel until both parcels have shipped"""

        def operation(session: Session, trade: Trade, outbox: _Outbox) -> None:
            self._require_participant(trade, user_id, "cancel trade")
            self._transition(
                session, trade, TradeStatus.CANCELLED, outbox, user_id=user_id,
                action="cancel trade", details={"reason": reason} if reason else None,
            )
            trade.cancelled_by = user_id
            trade.cancellation_reason = reason
            trade.resolution_outcome = TradeOutcome.CANCELLED.value
            self.redirection_engine.void_trade_redirections(session, trade.trade_id)

        return self._run(trade_id, operation)

    @translate_stale_data()
    def resolve_dispute(
        self,
        trade_id: str,
        outcome: TradeOutcome,
        at_fault_user_id: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> TradeSummary:
        """Moderator decision closing a DISPUTED trade, with optional fault attribution"""
        if not isinstance(outcome, TradeOutcome):
            try:
                outcome = TradeOutcome(outcome)
            except ValueError:
                raise ValidationError(f"Unknown resolution outcome {outcome!r}", field="outcome")

        def operation(session: Session, trade: Trade, outbox: _Outbox) -> None:
            if at_fault_user_id is not None and not trade.is_participant(at_fault_user_id):
                raise ValidationError(
                    f"{at_fault_user_id} is not a participant of {trade.trade_id}", field="at_fault_user_id"
                )
            if trade.trade_status != TradeStatus.DISPUTED:
                raise InvalidTransitionError(
                    trade.trade_status.value, "resolve dispute", "trade is not disputed"
                )

            trade.at_fault_user_id = at_fault_user_id
            trade.resolved_by = resolved_by
            trade.dispute_resolved_at = get_naive_utc_now()
            self._record_step(
                session, trade, "dispute_resolved", resolved_by,
                {"outcome": outcome.value, "at_fault_user_id": at_fault_user_id},
            )

            if outcome == TradeOutcome.COMPLETED:
                self._complete(session, trade, outbox, at_fault_user_id=at_fault_user_id, resolved_by=resolved_by)
            else:
                self._transition(
                    session, trade, TradeStatus.CANCELLED, outbox, user_id=resolved_by,
                    action="resolve dispute", via_resolution=True,
                    details={"at_fault_user_id": at_fault_user_id},
                )
                trade.resolution_outcome = TradeOutcome.CANCELLED.value
                self.redirection_engine.void_trade_redirections(session, trade.trade_id)
                self._apply_outcome(session, trade, TradeOutcome.CANCELLED, at_fault_user_id)

            logger.info(
                f"⚖️ DISPUTE_RESOLVED: {trade.trade_id} outcome={outcome.value} "
                f"at_fault={at_fault_user_id} by={resolved_by}"
            )

        return self._run(trade_id, operation)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_trade(self, trade_id: str) -> TradeSummary:
        session = self.session_factory()
        try:
            trade = session.query(Trade).filter(Trade.trade_id == trade_id).one_or_none()
            if trade is None:
                raise TradeNotFoundError(trade_id)
            return self._summarize(session, trade)
        finally:
            session.close()

    def get_security_status(self, trade_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Authoritative view of a trade for one participant (or a moderator when
        user_id is None): status, frozen risk decision, exact unmet requirements,
        the caller's next action and the decoy label the caller ships to.
        """
        session = self.session_factory()
        try:
            trade = session.query(Trade).filter(Trade.trade_id == trade_id).one_or_none()
            if trade is None:
                raise TradeNotFoundError(trade_id)
            if user_id is not None:
                self._require_participant(trade, user_id, "view security status")

            photos = self._participants_with(session, TradePhotoSubmission, trade)
            shipments = {
                row.participant_id: row
                for row in session.query(TradeShipmentConfirmation)
                .filter(TradeShipmentConfirmation.trade_id == trade.trade_id).all()
            }
            deliveries = {
                row.participant_id: row
                for row in session.query(TradeDeliveryConfirmation)
                .filter(TradeDeliveryConfirmation.trade_id == trade.trade_id).all()
            }
            disputes = (
                session.query(TradeDispute)
                .filter(TradeDispute.trade_id == trade.trade_id)
                .order_by(TradeDispute.id).all()
            )
            timeline = (
                session.query(TradeTimelineEvent)
                .filter(TradeTimelineEvent.trade_id == trade.trade_id)
                .order_by(TradeTimelineEvent.id).all()
            )
            redirections = RedirectionEngine.records_for_trade(session, trade.trade_id)

            unmet = self._unmet_requirements(trade, user_id, photos, shipments, deliveries)
            steps = {
                participant: {
                    "photos_submitted": participant in photos,
                    "shipping_confirmed": participant in shipments,
                    "tracking_number": shipments[participant].tracking_number if participant in shipments else None,
                    "delivery_confirmed": participant in deliveries,
                }
                for participant in trade.participants()
            }

            label = None
            if user_id is not None:
                record = redirections.get(trade.outgoing_direction(user_id))
                if record is not None:
                    label = RedirectionEngine.shipping_label(record)

            risk_tier = RiskTier(trade.risk_tier) if trade.risk_tier else None
            return {
                "trade_id": trade.trade_id,
                "status": trade.status,
                "participant_a": trade.participant_a,
                "participant_b": trade.participant_b,
                "risk_tier": trade.risk_tier,
                "required_constraints": sorted(c.value for c in trade.constraints),
                "recommendation": TrustRiskEngine.RECOMMENDATIONS[risk_tier] if risk_tier else None,
                "steps": steps,
                "unmet_requirements": unmet,
                "next_action": self._next_action(trade, user_id, unmet),
                "shipping_label": label,
                "redirections": {
                    direction.value: record.status for direction, record in redirections.items()
                },
                "disputes": [
                    {
                        "reporter_id": d.reporter_id,
                        "reason": d.reason,
                        "description": d.description,
                        "evidence": list(d.evidence or []),
                        "status": (
                            "resolved"
                            if trade.dispute_resolved_at is not None and d.reported_at <= trade.dispute_resolved_at
                            else "pending"
                        ),
                        "reported_at": d.reported_at.isoformat(),
                    }
                    for d in disputes
                ],
                "timeline": [
                    {
                        "step": event.step,
                        "user_id": event.user_id,
                        "from_status": event.from_status,
                        "to_status": event.to_status,
                        "at": event.created_at.isoformat(),
                    }
                    for event in timeline
                ],
            }
        finally:
            session.close()

    @staticmethod
    def _unmet_requirements(
        trade: Trade,
        viewer: Optional[str],
        photos: set,
        shipments: Dict[str, Any],
        deliveries: Dict[str, Any],
    ) -> List[str]:
        def whose(participant: str) -> str:
            if viewer is None:
                return f"{participant}'s"
            return "your" if participant == viewer else "the other party's"

        status = trade.trade_status
        tracked = trade.requires(SecurityConstraint.TRACKING)
        unmet = []

        if status == TradeStatus.PROPOSED:
            unmet.append(
                "waiting on your acceptance" if viewer == trade.participant_b
                else "waiting on the other party's acceptance"
            )
        elif status == TradeStatus.VERIFICATION_PENDING:
            for participant in trade.participants():
                if participant not in photos:
                    unmet.append(f"waiting on {whose(participant)} photos")
        elif status == TradeStatus.SHIPPING_PENDING:
            for participant in trade.participants():
                if participant not in shipments:
                    suffix = " with a tracking number" if tracked else ""
                    unmet.append(f"waiting on {whose(participant)} shipment confirmation{suffix}")
        elif status == TradeStatus.SHIPPING_CONFIRMED:
            for participant in trade.participants():
                if participant not in deliveries:
                    unmet.append(f"waiting on {whose(participant)} delivery confirmation")
        elif status == TradeStatus.DISPUTED:
            unmet.append("waiting on dispute resolution by the moderation team")

        return unmet

    @staticmethod
    def _next_action(trade: Trade, viewer: Optional[str], unmet: List[str]) -> Optional[str]:
        if viewer is None:
            return None
        status = trade.trade_status
        own = [item for item in unmet if "your" in item.split()]
        if status == TradeStatus.PROPOSED:
            return "accept_trade" if viewer == trade.participant_b else "wait_for_counterparty"
        if status == TradeStatus.DISPUTED:
            return "wait_for_resolution"
        if TradeStateMachine.is_terminal(status):
            return None
        if not own:
            return "wait_for_counterparty"
        return {
            TradeStatus.VERIFICATION_PENDING: "submit_photos",
            TradeStatus.SHIPPING_PENDING: "confirm_shipment",
            TradeStatus.SHIPPING_CONFIRMED: "confirm_delivery",
        }.get(status, "wait_for_counterparty")
