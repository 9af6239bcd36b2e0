"""Plan catalog, quota checks, lazy resets and upgrades."""
from datetime import datetime, timezone

import pytest

from careerdev.db import Database
from careerdev.storage import SQLSubscriptionStore
from careerdev.subscriptions import (
    PLAN_RULES,
    UNLIMITED,
    USAGE_COUNTERS,
    InvalidPlanError,
    SubscriptionLedger,
    normalize_tier,
    subscription_payload,
    upgrade_message,
)


class TestCatalog:
    def test_every_tier_limits_every_counter(self):
        for plan in PLAN_RULES.values():
            assert set(plan["limits"]) == set(USAGE_COUNTERS)

    def test_prices(self):
        assert [PLAN_RULES[tier]["price"] for tier in ("free", "starter", "pro", "premium")] == [0, 9, 69, 109]

    def test_extended_quiz_flag(self):
        assert not PLAN_RULES["free"]["quiz_30_min_enabled"]
        assert not PLAN_RULES["starter"]["quiz_30_min_enabled"]
        assert PLAN_RULES["pro"]["quiz_30_min_enabled"]
        assert PLAN_RULES["premium"]["quiz_30_min_enabled"]

    def test_normalize_tier(self):
        assert normalize_tier(" Pro ") == "pro"
        assert normalize_tier("gold") is None
        assert normalize_tier(None) is None

    def test_free_trial_message_points_to_starter(self):
        message = upgrade_message("free", "resumes", 1)
        assert message == "You've used your free trial for resumes! Upgrade to Starter (₹9/month) to continue using this feature."


class TestLedger:
    def test_new_user_starts_free_with_zero_usage(self, ledger, clock):
        subscription = ledger.get_or_create("u1")
        assert subscription.tier == "free"
        assert subscription.usage == {name: 0 for name in USAGE_COUNTERS}
        assert subscription.start_date == clock.now
        assert subscription.last_reset == clock.now

    def test_period_end_clamps_to_month_end(self, ledger):
        subscription = ledger.get_or_create("u1")
        assert subscription.end_date == datetime(2026, 2, 28, 9, 30, tzinfo=timezone.utc)

    def test_get_or_create_is_stable(self, ledger):
        first = ledger.get_or_create("u1")
        ledger.commit_usage("u1", "resumes")
        second = ledger.get_or_create("u1")
        assert second.start_date == first.start_date
        assert second.usage["resumes"] == 1

    def test_free_resume_allowed_once(self, ledger):
        reservation = ledger.check_and_reserve("u1", "resumes")
        assert reservation.allowed
        assert ledger.commit_usage("u1", "resumes") is True

        denied = ledger.check_and_reserve("u1", "resumes")
        assert not denied.allowed
        assert denied.denial == "quota"
        assert denied.used == 1
        assert denied.limit == 1
        assert "Upgrade to Starter" in denied.reason

    def test_check_has_no_side_effects(self, ledger):
        for _ in range(3):
            assert ledger.check_and_reserve("u1", "resumes").allowed
        assert ledger.get_or_create("u1").usage["resumes"] == 0

    def test_commit_never_exceeds_ceiling(self, ledger):
        assert ledger.commit_usage("u1", "cover_letters") is True
        assert ledger.commit_usage("u1", "cover_letters") is False
        assert ledger.get_or_create("u1").usage["cover_letters"] == 1

    def test_zero_limit_feature_is_not_included(self, ledger):
        reservation = ledger.check_and_reserve("u1", "hr_contact_list")
        assert not reservation.allowed
        assert reservation.limit == 0
        assert "not included" in reservation.reason

    def test_usage_resets_after_window(self, ledger, clock):
        ledger.commit_usage("u1", "resumes")
        clock.advance(days=31)
        reservation = ledger.check_and_reserve("u1", "resumes")
        assert reservation.allowed
        subscription = ledger.get_or_create("u1")
        assert subscription.usage["resumes"] == 0
        assert subscription.last_reset == clock.now

    def test_usage_kept_inside_window(self, ledger, clock):
        ledger.commit_usage("u1", "resumes")
        clock.advance(days=29)
        assert not ledger.check_and_reserve("u1", "resumes").allowed
        assert ledger.get_or_create("u1").usage["resumes"] == 1

    def test_reset_if_due_for_unknown_user_is_noop(self, ledger):
        ledger.reset_if_due("nobody")

    def test_upgrade_keeps_usage(self, ledger, clock):
        ledger.commit_usage("u1", "resumes")
        clock.advance(days=3)
        upgraded = ledger.upgrade("u1", "pro")
        assert upgraded.tier == "pro"
        assert upgraded.usage["resumes"] == 1
        assert upgraded.start_date == clock.now
        reservation = ledger.check_and_reserve("u1", "resumes")
        assert reservation.allowed
        assert reservation.limit == 10

    def test_upgrade_rejects_unknown_plan(self, ledger):
        ledger.get_or_create("u1")
        with pytest.raises(InvalidPlanError):
            ledger.upgrade("u1", "gold")
        assert ledger.get_or_create("u1").tier == "free"

    def test_upgrade_refuses_lower_tier(self, ledger):
        ledger.upgrade("u1", "premium")
        with pytest.raises(InvalidPlanError, match="premium"):
            ledger.upgrade("u1", "starter")
        assert ledger.get_or_create("u1").tier == "premium"

    def test_upgrade_to_same_tier_renews(self, ledger, clock):
        ledger.upgrade("u1", "pro")
        clock.advance(days=25)
        renewed = ledger.upgrade("u1", "pro")
        assert renewed.tier == "pro"
        assert renewed.start_date == clock.now

    def test_unknown_feature(self, ledger):
        reservation = ledger.check_and_reserve("u1", "telepathy")
        assert not reservation.allowed
        assert reservation.denial == "invalid"
        with pytest.raises(ValueError):
            ledger.commit_usage("u1", "telepathy")

    def test_unlimited_features_never_deny(self, ledger):
        ledger.upgrade("u1", "premium")
        for _ in range(25):
            assert ledger.check_and_reserve("u1", "resumes").allowed
            assert ledger.commit_usage("u1", "resumes")
        assert subscription_payload(ledger.get_or_create("u1"))["remaining"]["resumes"] == UNLIMITED

    def test_bypass_allows_past_limits(self, subscription_store, clock):
        ledger = SubscriptionLedger(subscription_store, clock=clock, enforce_limits=False)
        for _ in range(3):
            assert ledger.check_and_reserve("u1", "resumes").allowed
            assert ledger.commit_usage("u1", "resumes")
        assert ledger.get_or_create("u1").usage["resumes"] == 3


class TestExtendedQuizGate:
    def test_free_user_is_denied_despite_quota(self, ledger):
        assert ledger.check_and_reserve("u1", "quiz_generates").allowed
        reservation = ledger.check_and_reserve("u1", "quiz_30_min")
        assert not reservation.allowed
        assert reservation.denial == "capability"
        assert "Pro and Premium" in reservation.reason

    def test_starter_is_denied(self, ledger):
        ledger.upgrade("u1", "starter")
        assert ledger.check_and_reserve("u1", "quiz_30_min").denial == "capability"

    def test_pro_uses_base_quiz_counter(self, ledger):
        ledger.upgrade("u1", "pro")
        assert ledger.check_and_reserve("u1", "quiz_30_min").allowed
        assert ledger.commit_usage("u1", "quiz_30_min")
        assert ledger.get_or_create("u1").usage["quiz_generates"] == 1

    def test_pro_denied_when_base_quota_spent(self, subscription_store, ledger):
        ledger.upgrade("u1", "pro")
        for _ in range(50):
            assert ledger.commit_usage("u1", "quiz_generates")
        reservation = ledger.check_and_reserve("u1", "quiz_30_min")
        assert not reservation.allowed
        assert reservation.denial == "quota"


class TestPayload:
    def test_remaining_counts(self, ledger):
        ledger.commit_usage("u1", "resumes")
        payload = subscription_payload(ledger.get_or_create("u1"))
        assert payload["tier"] == "free"
        assert payload["remaining"]["resumes"] == 0
        assert payload["remaining"]["cover_letters"] == 1
        assert payload["features"] == {"quiz_30_min_enabled": False}


class TestSQLSubscriptionStore:
    @pytest.fixture
    def sql_ledger(self, tmp_path, clock):
        database = Database("sqlite", db_path=str(tmp_path / "ledger.db"))
        database.init_schema()
        return SubscriptionLedger(SQLSubscriptionStore(database), clock=clock)

    def test_create_is_idempotent(self, tmp_path, clock):
        database = Database("sqlite", db_path=str(tmp_path / "ledger.db"))
        database.init_schema()
        store = SQLSubscriptionStore(database)
        ledger = SubscriptionLedger(store, clock=clock)
        first = ledger.get_or_create("u1")
        assert store.create(first) is False
        assert store.load("u1") == first

    def test_quota_round_trip(self, sql_ledger):
        assert sql_ledger.commit_usage("u1", "resumes") is True
        assert sql_ledger.commit_usage("u1", "resumes") is False
        assert sql_ledger.get_or_create("u1").usage["resumes"] == 1

    def test_reset_and_upgrade(self, sql_ledger, clock):
        sql_ledger.commit_usage("u1", "salary_guide")
        clock.advance(days=30)
        assert sql_ledger.get_or_create("u1").usage["salary_guide"] == 0

        sql_ledger.commit_usage("u1", "salary_guide")
        upgraded = sql_ledger.upgrade("u1", "starter")
        assert upgraded.tier == "starter"
        assert upgraded.usage["salary_guide"] == 1

    def test_update_tier_for_missing_user_raises(self, tmp_path, clock):
        database = Database("sqlite", db_path=str(tmp_path / "ledger.db"))
        database.init_schema()
        with pytest.raises(KeyError):
            SQLSubscriptionStore(database).update_tier("ghost", "pro", clock.now, clock.now)
