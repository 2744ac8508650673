"""
Trust and Risk Engine Tests
Score bounds and calibration, risk classification, outcome bookkeeping
"""

import itertools

import pytest

from models import TrustProfile, RiskTier, SecurityConstraint, TradeOutcome, DisputeReason
from services.trust_risk_engine import TrustRiskEngine


def _profile(successful=0, failed=0, violations=0, age=0, email=False, phone=False,
             ratings=(), user_id="user") -> TrustProfile:
    return TrustProfile(
        user_id=user_id,
        successful_trades=successful,
        failed_trades=failed,
        disputed_trades=0,
        ratings_received=len(ratings),
        rating_total=sum(ratings),
        violation_points=violations,
        account_age_days=age,
        verified_email=email,
        verified_phone=phone,
    )


class TestTrustScore:
    """computeTrustScore calibration"""

    def test_new_user_scores_baseline(self):
        """No history and no verification yields exactly the baseline"""
        assert TrustRiskEngine.compute_trust_score(_profile()) == 40

    def test_new_user_always_high_risk(self):
        """Even a fully verified veteran account without trades stays below MEDIUM"""
        score = TrustRiskEngine.compute_trust_score(_profile(age=3650, email=True, phone=True))

        assert score == 49
        assert TrustRiskEngine.tier_for_score(score) == RiskTier.HIGH

    def test_established_user_scores_ninety(self):
        """Twenty clean trades saturate the experience component"""
        assert TrustRiskEngine.compute_trust_score(_profile(successful=20)) == 90

    def test_verified_bonuses_are_capped(self):
        """Email, phone and seniority add at most nine points"""
        score = TrustRiskEngine.compute_trust_score(_profile(successful=20, age=10000, email=True, phone=True))
        assert score == 99

    def test_experience_phases_in(self):
        """Five clean trades sit halfway between baseline and ninety"""
        assert TrustRiskEngine.compute_trust_score(_profile(successful=5)) == 65

    def test_only_failures_near_floor(self):
        """A history of failures scores near zero but never below"""
        assert TrustRiskEngine.compute_trust_score(_profile(failed=10)) == 0
        assert TrustRiskEngine.compute_trust_score(_profile(failed=10, violations=100)) == 0
        assert TrustRiskEngine.compute_trust_score(_profile(failed=3)) <= 30

    def test_violations_reduce_score(self):
        """Violation points cost one point each, up to the cap"""
        clean = TrustRiskEngine.compute_trust_score(_profile(successful=20))
        one_violation = TrustRiskEngine.compute_trust_score(_profile(successful=20, violations=15))
        many = TrustRiskEngine.compute_trust_score(_profile(successful=20, violations=500))

        assert one_violation == clean - 15
        assert many == clean - 60, "Violation penalty should be capped"

    def test_received_ratings_adjust_score(self):
        """Five stars on average add ten points, one star removes ten, three is neutral"""
        base = TrustRiskEngine.compute_trust_score(_profile(successful=5))

        assert TrustRiskEngine.compute_trust_score(_profile(successful=5, ratings=(5, 5))) == base + 10
        assert TrustRiskEngine.compute_trust_score(_profile(successful=5, ratings=(1,))) == base - 10
        assert TrustRiskEngine.compute_trust_score(_profile(successful=5, ratings=(3, 3, 3))) == base
        assert TrustRiskEngine.compute_trust_score(_profile(successful=5, ratings=(4, 4))) == base + 5

    def test_no_ratings_is_neutral(self):
        assert _profile(successful=3).average_rating is None
        assert _profile(successful=3, ratings=(4, 5)).average_rating == 4.5

    def test_score_bounds(self):
        """0 <= score <= 100 across a wide range of histories"""
        values = [0, 1, 3, 10, 50, 1000]
        for successful, failed, violations in itertools.product(values, values, values):
            for ratings in ((), (1, 1), (5, 5, 5)):
                score = TrustRiskEngine.compute_trust_score(
                    _profile(successful, failed, violations, age=5000, email=True, phone=True, ratings=ratings)
                )
                assert 0 <= score <= 100, f"Out of bounds for {successful}/{failed}/{violations}/{ratings}: {score}"
                assert isinstance(score, int)

    def test_deterministic(self):
        """Same inputs, same score"""
        profile = _profile(successful=7, failed=2, violations=8, age=400, email=True, ratings=(4, 2))
        assert TrustRiskEngine.compute_trust_score(profile) == TrustRiskEngine.compute_trust_score(profile)


class TestRiskClassification:
    """classifyRisk thresholds and constraint sets"""

    def test_two_trusted_users_low(self):
        assessment = TrustRiskEngine.classify_risk(90, 90)

        assert assessment.risk_tier == RiskTier.LOW
        assert assessment.required_constraints == frozenset()

    def test_medium_requires_tracking(self):
        assessment = TrustRiskEngine.classify_risk(90, 60)

        assert assessment.risk_tier == RiskTier.MEDIUM
        assert assessment.required_constraints == frozenset({SecurityConstraint.TRACKING})

    def test_worst_participant_decides(self):
        """One new user makes the whole trade HIGH"""
        assessment = TrustRiskEngine.classify_risk(99, 40)

        assert assessment.risk_tier == RiskTier.HIGH
        assert assessment.required_constraints == frozenset({
            SecurityConstraint.PHOTOS,
            SecurityConstraint.TRACKING,
            SecurityConstraint.MANUAL_CONFIRMATION,
        })
        assert assessment.lowest_score == 40

    def test_threshold_edges(self):
        assert TrustRiskEngine.tier_for_score(75) == RiskTier.LOW
        assert TrustRiskEngine.tier_for_score(74) == RiskTier.MEDIUM
        assert TrustRiskEngine.tier_for_score(50) == RiskTier.MEDIUM
        assert TrustRiskEngine.tier_for_score(49) == RiskTier.HIGH

    def test_constraints_monotonic_in_tier(self):
        """A more severe tier never requires fewer checks"""
        ordered = sorted(TrustRiskEngine.TIER_CONSTRAINTS, key=TrustRiskEngine.TIER_ORDER.get)
        for lower, higher in zip(ordered, ordered[1:]):
            assert TrustRiskEngine.TIER_CONSTRAINTS[higher] >= TrustRiskEngine.TIER_CONSTRAINTS[lower], (
                f"{higher.value} must include every constraint of {lower.value}"
            )

    def test_classification_monotonic_in_scores(self):
        """Lowering either score never relaxes the constraint set"""
        scores = range(0, 101, 5)
        for a, b in itertools.product(scores, scores):
            current = TrustRiskEngine.classify_risk(a, b).required_constraints
            if a >= 5:
                assert TrustRiskEngine.classify_risk(a - 5, b).required_constraints >= current

    def test_recommendation_present(self):
        for tier_scores in ((90, 90), (60, 90), (10, 90)):
            assert TrustRiskEngine.classify_risk(*tier_scores).recommendation


class TestRecordOutcome:
    """Counter updates applied to both profiles in the caller's session"""

    def test_completed_increments_both(self, session_factory, trust_engine):
        with session_factory() as session:
            alice = trust_engine.get_or_create_profile(session, "alice")
            bob = trust_engine.get_or_create_profile(session, "bob")

            trust_engine.record_outcome(session, alice, bob, TradeOutcome.COMPLETED)
            session.commit()

            assert alice.successful_trades == 1
            assert bob.successful_trades == 1
            assert alice.disputed_trades == 0
            assert alice.trust_score == TrustRiskEngine.compute_trust_score(alice)

    def test_cancelled_with_fault_only_touches_fault_side(self, session_factory, trust_engine):
        with session_factory() as session:
            alice = trust_engine.get_or_create_profile(session, "alice")
            bob = trust_engine.get_or_create_profile(session, "bob")

            trust_engine.record_outcome(session, alice, bob, TradeOutcome.CANCELLED, at_fault_user_id="bob")
            session.commit()

            assert (alice.successful_trades, alice.failed_trades, alice.disputed_trades) == (0, 0, 0)
            assert (bob.successful_trades, bob.failed_trades, bob.disputed_trades) == (0, 1, 1)
            assert bob.trust_score < alice.trust_score

    def test_cancelled_without_fault_changes_nothing(self, session_factory, trust_engine):
        with session_factory() as session:
            alice = trust_engine.get_or_create_profile(session, "alice")
            bob = trust_engine.get_or_create_profile(session, "bob")

            trust_engine.record_outcome(session, alice, bob, TradeOutcome.CANCELLED)

            assert (alice.failed_trades, bob.failed_trades) == (0, 0)

    def test_completed_with_fault_marks_dispute(self, session_factory, trust_engine):
        """Dispute resolved to completion still counts against the party at fault"""
        with session_factory() as session:
            alice = trust_engine.get_or_create_profile(session, "alice")
            bob = trust_engine.get_or_create_profile(session, "bob")

            trust_engine.record_outcome(session, alice, bob, TradeOutcome.COMPLETED, at_fault_user_id="alice")

            assert alice.successful_trades == 1 and alice.disputed_trades == 1
            assert bob.successful_trades == 1 and bob.disputed_trades == 0

    def test_completed_records_received_ratings(self, session_factory, trust_engine):
        """Each side is credited with the rating the other side gave it"""
        with session_factory() as session:
            alice = trust_engine.get_or_create_profile(session, "alice")
            bob = trust_engine.get_or_create_profile(session, "bob")

            trust_engine.record_outcome(
                session, alice, bob, TradeOutcome.COMPLETED, ratings={"alice": 5, "bob": 1}
            )

            assert (alice.ratings_received, alice.rating_total) == (1, 5)
            assert (bob.ratings_received, bob.rating_total) == (1, 1)
            assert alice.trust_score - bob.trust_score == 20

    def test_missing_rating_leaves_counters(self, session_factory, trust_engine):
        with session_factory() as session:
            alice = trust_engine.get_or_create_profile(session, "alice")
            bob = trust_engine.get_or_create_profile(session, "bob")

            trust_engine.record_outcome(session, alice, bob, TradeOutcome.COMPLETED, ratings={"alice": 4})

            assert bob.ratings_received == 0 and bob.average_rating is None
            assert alice.average_rating == 4.0

    def test_ratings_ignored_on_cancellation(self, session_factory, trust_engine):
        with session_factory() as session:
            alice = trust_engine.get_or_create_profile(session, "alice")
            bob = trust_engine.get_or_create_profile(session, "bob")

            trust_engine.record_outcome(session, alice, bob, TradeOutcome.CANCELLED, ratings={"alice": 5})

            assert alice.ratings_received == 0

    @pytest.mark.parametrize("reason,points", [
        (DisputeReason.COUNTERFEIT, 20),
        (DisputeReason.NOT_SHIPPED, 15),
        (DisputeReason.WRONG_ITEM, 10),
        (DisputeReason.DAMAGED, 8),
        (DisputeReason.COMMUNICATION_ISSUE, 5),
        (DisputeReason.OTHER, 10),
        (None, 10),
    ])
    def test_violation_weighted_by_reason(self, session_factory, trust_engine, reason, points):
        with session_factory() as session:
            alice = trust_engine.get_or_create_profile(session, "alice")
            bob = trust_engine.get_or_create_profile(session, "bob")

            trust_engine.record_outcome(
                session, alice, bob, TradeOutcome.CANCELLED, at_fault_user_id="bob", violation=reason
            )

            assert bob.violation_points == points
            assert alice.violation_points == 0

    def test_counterfeit_costs_more_than_communication(self, session_factory, trust_engine):
        with session_factory() as session:
            profiles = [trust_engine.get_or_create_profile(session, user) for user in ("a", "b", "c", "d")]
            for profile in profiles:
                profile.successful_trades = 20
            a, b, c, d = profiles

            trust_engine.record_outcome(
                session, a, b, TradeOutcome.COMPLETED, at_fault_user_id="a", violation=DisputeReason.COUNTERFEIT
            )
            trust_engine.record_outcome(
                session, c, d, TradeOutcome.COMPLETED, at_fault_user_id="c",
                violation=DisputeReason.COMMUNICATION_ISSUE,
            )

            assert a.trust_score < c.trust_score


class TestProfileSync:
    def test_sync_reads_user_directory(self, session_factory, directory, trust_engine):
        """Directory flags and account age flow into the score"""
        directory.register("carol", account_age_days=400, verified_email=True, verified_phone=True)

        with session_factory() as session:
            profile = trust_engine.sync_profile(session, "carol")
            session.commit()

            assert profile.verified_email and profile.verified_phone
            assert profile.account_age_days == 400
            assert profile.trust_score == 40 + 3 + 3 + 3

    def test_get_or_create_is_idempotent(self, session_factory, trust_engine):
        with session_factory() as session:
            first = trust_engine.get_or_create_profile(session, "dave")
            session.commit()
        with session_factory() as session:
            second = trust_engine.get_or_create_profile(session, "dave")
            assert second.id == first.id

    def test_unknown_user_reads_baseline(self, session_factory, trust_engine):
        with session_factory() as session:
            assert trust_engine.get_trust_score(session, "nobody") == 40


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
