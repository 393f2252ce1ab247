"""Tests for small-group suppression on rollup reads."""
from datetime import datetime, timezone

import pytest

from herotrack.services.aggregation_service.k_anonymity import (
    K_ANONYMITY_THRESHOLD,
    KAnonymityEnforcer,
    ReleaseDecision,
)
from herotrack.shared.models import Granularity, RollupKey, RollupRecord

DAY = datetime(2024, 3, 14, tzinfo=timezone.utc)


def make_record(distinct_subjects):
    return RollupRecord(
        key=RollupKey("class-a", None, Granularity.DAILY, DAY),
        event_count=12,
        score_sum=42,
        mean_score=3.5,
        distinct_subjects=distinct_subjects,
    )


@pytest.fixture
def enforcer():
    return KAnonymityEnforcer()


class TestDecide:
    def test_small_group_withheld(self, enforcer):
        decision = enforcer.decide(make_record(3))

        assert decision.released is False
        assert decision.distinct_subjects == 3
        assert decision.bucket == "class-a|*|daily|2024-03-14T00:00:00Z"
        assert "below" in decision.reason

    def test_group_at_threshold_released(self, enforcer):
        decision = enforcer.decide(make_record(5))

        assert decision.released is True
        assert decision.reason is None

    def test_empty_group_withheld(self, enforcer):
        assert enforcer.decide(make_record(0)).released is False

    def test_default_threshold_is_five(self):
        assert K_ANONYMITY_THRESHOLD == 5
        assert KAnonymityEnforcer().k_threshold == 5

    def test_custom_threshold(self):
        assert KAnonymityEnforcer(k_threshold=10).decide(make_record(7)).released is False
        assert KAnonymityEnforcer(k_threshold=2).decide(make_record(2)).released is True

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            KAnonymityEnforcer(k_threshold=0)

    def test_suppressions_counted(self, enforcer):
        enforcer.decide(make_record(1))
        enforcer.decide(make_record(2))
        enforcer.decide(make_record(9))

        assert enforcer.suppressed == 2


class TestRelease:
    def test_withheld_view_hides_statistics(self, enforcer):
        view = enforcer.release(make_record(2), {"mean_score": 4.0, "event_count": 3})

        assert view["suppressed"] is True
        assert "mean_score" not in view
        assert "event_count" not in view
        assert view["reason"]

    def test_released_view_keeps_statistics(self, enforcer):
        view = enforcer.release(make_record(6), {"mean_score": 4.0})

        assert view == {"mean_score": 4.0, "suppressed": False}

    def test_apply_does_not_mutate_input(self):
        statistics = {"mean_score": 4.0}
        decision = ReleaseDecision(bucket="b", distinct_subjects=8, released=True)

        decision.apply(statistics)

        assert statistics == {"mean_score": 4.0}
