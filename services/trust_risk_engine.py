"""
Trust and Risk Engine
Derives a bounded trust score from a participant's trade history and maps the
pair of scores on a trade to a risk tier and its verification constraints
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import TrustProfile, RiskTier, SecurityConstraint, TradeOutcome, DisputeReason
from services.collaborators import UserDirectory
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskAssessment:
    """Risk decision frozen onto a trade at acceptance"""
    risk_tier: RiskTier
    required_constraints: FrozenSet[SecurityConstraint]
    lowest_score: int
    recommendation: str
    scores: Dict[str, int] = field(default_factory=dict)

    def constraint_values(self) -> list:
        return sorted(c.value for c in self.required_constraints)


class TrustRiskEngine:
    """Trust scoring, risk classification and outcome bookkeeping"""

    # Verification steps per tier; each tier's set contains the one below it
    TIER_CONSTRAINTS = {
        RiskTier.LOW: frozenset(),
        RiskTier.MEDIUM: frozenset({SecurityConstraint.TRACKING}),
        RiskTier.HIGH: frozenset({
            SecurityConstraint.PHOTOS,
            SecurityConstraint.TRACKING,
            SecurityConstraint.MANUAL_CONFIRMATION,
        }),
    }

    TIER_ORDER = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2}

    RECOMMENDATIONS = {
        RiskTier.LOW: "Trusted participants. Standard shipping is enough.",
        RiskTier.MEDIUM: "Moderate risk. Tracked shipping is required for both parcels.",
        RiskTier.HIGH: "High risk. Item photos, tracked shipping and manual delivery confirmation are required.",
    }

    VERIFIED_EMAIL_BONUS = 3
    VERIFIED_PHONE_BONUS = 3
    ACCOUNT_AGE_BONUS_DAYS = 90
    ACCOUNT_AGE_BONUS_MAX = 3
    EXPERIENCED_SCORE_CEILING = 90

    # Received ratings move the score by 5 points per star away from 3, at most 10 either way
    RATING_NEUTRAL = 3
    RATING_POINTS_PER_STAR = 5
    RATING_ADJUSTMENT_MAX = 10

    # Points charged to the party at fault; other reasons use TRUST_DISPUTE_PENALTY
    VIOLATION_PENALTIES = {
        DisputeReason.NOT_SHIPPED: 15,
        DisputeReason.WRONG_ITEM: 10,
        DisputeReason.DAMAGED: 8,
        DisputeReason.COUNTERFEIT: 20,
        DisputeReason.COMMUNICATION_ISSUE: 5,
    }

    def __init__(self, user_directory: Optional[UserDirectory] = None):
        self.user_directory = user_directory

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    @classmethod
    def compute_trust_score(cls, profile: TrustProfile) -> int:
        """
        Deterministic trust score in [0, 100].

        Users without completed or failed trades sit at the configured baseline
        (plus small verification and seniority bonuses), which keeps them below
        the MEDIUM threshold. History pulls the score towards 90 * success ratio,
        weighted in over the first TRUST_EXPERIENCE_HISTORY trades. The average
        received rating adds or removes up to 10 points, and violation points
        from disputes lost subtract a capped penalty.
        """
        successful = profile.successful_trades or 0
        failed = profile.failed_trades or 0
        history = successful + failed

        baseline = Config.TRUST_BASELINE_SCORE
        if history == 0:
            experience = float(baseline)
        else:
            success_ratio = successful / history
            weight = min(1.0, history / max(1, Config.TRUST_EXPERIENCE_HISTORY))
            target = cls.EXPERIENCED_SCORE_CEILING * success_ratio
            experience = baseline + (target - baseline) * weight

        bonus = 0
        if profile.verified_email:
            bonus += cls.VERIFIED_EMAIL_BONUS
        if profile.verified_phone:
            bonus += cls.VERIFIED_PHONE_BONUS
        bonus += min(cls.ACCOUNT_AGE_BONUS_MAX, (profile.account_age_days or 0) // cls.ACCOUNT_AGE_BONUS_DAYS)

        rating_adjustment = 0.0
        if profile.ratings_received:
            average = (profile.rating_total or 0) / profile.ratings_received
            rating_adjustment = (average - cls.RATING_NEUTRAL) * cls.RATING_POINTS_PER_STAR
            rating_adjustment = max(-cls.RATING_ADJUSTMENT_MAX, min(cls.RATING_ADJUSTMENT_MAX, rating_adjustment))

        penalty = min(Config.TRUST_DISPUTE_PENALTY_CAP, profile.violation_points or 0)

        score = int(round(experience + bonus + rating_adjustment - penalty))
        return max(0, min(100, score))

    @classmethod
    def violation_penalty(cls, reason: Optional[DisputeReason]) -> int:
        return cls.VIOLATION_PENALTIES.get(reason, Config.TRUST_DISPUTE_PENALTY)

    @staticmethod
    def tier_for_score(score: int) -> RiskTier:
        if score >= Config.LOW_RISK_THRESHOLD:
            return RiskTier.LOW
        if score >= Config.MEDIUM_RISK_THRESHOLD:
            return RiskTier.MEDIUM
        return RiskTier.HIGH

    @classmethod
    def classify_risk(cls, score_a: int, score_b: int) -> RiskAssessment:
        """The trade is as risky as its least trusted participant"""
        tier_a = cls.tier_for_score(score_a)
        tier_b = cls.tier_for_score(score_b)
        tier = tier_a if cls.TIER_ORDER[tier_a] >= cls.TIER_ORDER[tier_b] else tier_b

        return RiskAssessment(
            risk_tier=tier,
            required_constraints=cls.TIER_CONSTRAINTS[tier],
            lowest_score=min(score_a, score_b),
            recommendation=cls.RECOMMENDATIONS[tier],
            scores={"a": score_a, "b": score_b},
        )

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_or_create_profile(self, session: Session, user_id: str, for_update: bool = False) -> TrustProfile:
        query = session.query(TrustProfile).filter(TrustProfile.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        profile = query.one_or_none()
        if profile is not None:
            return profile

        profile = TrustProfile(
            user_id=user_id,
            successful_trades=0,
            failed_trades=0,
            disputed_trades=0,
            ratings_received=0,
            rating_total=0,
            violation_points=0,
            account_age_days=0,
            verified_email=False,
            verified_phone=False,
        )
        profile.trust_score = self.compute_trust_score(profile)
        try:
            with session.begin_nested():
                session.add(profile)
        except IntegrityError:
            # Created by a concurrent request
            logger.info(f"🔄 TRUST_PROFILE_RACE: {user_id} created concurrently, reloading")
            profile = query.one()
        else:
            logger.info(f"🆕 TRUST_PROFILE_CREATED: {user_id} baseline={profile.trust_score}")
        return profile

    def sync_profile(self, session: Session, user_id: str, for_update: bool = False) -> TrustProfile:
        """Refresh directory-sourced fields and recompute the score"""
        profile = self.get_or_create_profile(session, user_id, for_update=for_update)
        if self.user_directory is not None:
            profile.account_age_days = max(0, int(self.user_directory.get_account_age_days(user_id)))
            profile.verified_email = bool(self.user_directory.is_email_verified(user_id))
            profile.verified_phone = bool(self.user_directory.is_phone_verified(user_id))
        profile.trust_score = self.compute_trust_score(profile)
        profile.updated_at = get_naive_utc_now()
        return profile

    def assess_trade(self, session: Session, user_a: str, user_b: str) -> RiskAssessment:
        """Score both participants from fresh directory data and classify the trade"""
        profile_a = self.sync_profile(session, user_a)
        profile_b = self.sync_profile(session, user_b)
        assessment = self.classify_risk(profile_a.trust_score, profile_b.trust_score)
        logger.info(
            f"📊 RISK_ASSESSED: {user_a}={profile_a.trust_score} {user_b}={profile_b.trust_score} "
            f"tier={assessment.risk_tier.value} constraints={assessment.constraint_values()}"
        )
        return assessment

    def get_trust_score(self, session: Session, user_id: str) -> int:
        profile = session.query(TrustProfile).filter(TrustProfile.user_id == user_id).one_or_none()
        if profile is None:
            return self.compute_trust_score(TrustProfile(
                successful_trades=0, failed_trades=0, disputed_trades=0,
                ratings_received=0, rating_total=0, violation_points=0,
                account_age_days=0, verified_email=False, verified_phone=False,
            ))
        return profile.trust_score

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_outcome(
        self,
        session: Session,
        profile_a: TrustProfile,
        profile_b: TrustProfile,
        outcome: TradeOutcome,
        at_fault_user_id: Optional[str] = None,
        ratings: Optional[Dict[str, int]] = None,
        violation: Optional[DisputeReason] = None,
    ) -> Tuple[int, int]:
        """
        Apply a trade's outcome to both participants' counters and rescore them.

        `ratings` maps a user id to the rating that user received from the other
        side; it only counts on COMPLETED. `violation` weighs the penalty charged
        to the party at fault.

        Runs inside the caller's transaction and does not commit: the trade's
        terminal status and both profiles must land together.
        """
        ratings = ratings or {}
        for profile in (profile_a, profile_b):
            at_fault = at_fault_user_id is not None and profile.user_id == at_fault_user_id

            if outcome == TradeOutcome.COMPLETED:
                profile.successful_trades = (profile.successful_trades or 0) + 1
                rating = ratings.get(profile.user_id)
                if rating is not None:
                    profile.ratings_received = (profile.ratings_received or 0) + 1
                    profile.rating_total = (profile.rating_total or 0) + rating
            elif at_fault:
                profile.failed_trades = (profile.failed_trades or 0) + 1

            if at_fault:
                profile.disputed_trades = (profile.disputed_trades or 0) + 1
                profile.violation_points = (profile.violation_points or 0) + self.violation_penalty(violation)

            profile.trust_score = self.compute_trust_score(profile)
            profile.updated_at = get_naive_utc_now()

        session.flush()
        logger.info(
            f"✅ TRUST_OUTCOME_RECORDED: {outcome.value} at_fault={at_fault_user_id} "
            f"violation={violation.value if violation else None} "
            f"{profile_a.user_id}={profile_a.trust_score} {profile_b.user_id}={profile_b.trust_score}"
        )
        return profile_a.trust_score, profile_b.trust_score
