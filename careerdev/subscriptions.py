from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Iterator

from careerdev.config import logger
from careerdev.utils import add_one_month, safe_text, utc_now

if TYPE_CHECKING:
    from careerdev.storage import SubscriptionStore

UNLIMITED = "unlimited"
TIER_ORDER = ["free", "starter", "pro", "premium"]

USAGE_COUNTERS = [
    "resumes",
    "cover_letters",
    "mock_interviews",
    "quiz_generates",
    "roadmap_generator",
    "project_feedback",
    "salary_guide",
    "hr_contact_list",
]

# The extended quiz draws on the quiz_generates quota and also needs a plan flag.
QUIZ_30_MIN = "quiz_30_min"
FEATURE_COUNTERS: dict[str, str] = {**{name: name for name in USAGE_COUNTERS}, QUIZ_30_MIN: "quiz_generates"}
FEATURE_CAPABILITIES: dict[str, str] = {QUIZ_30_MIN: "quiz_30_min_enabled"}

FEATURE_LABELS = {
    "resumes": "resumes",
    "cover_letters": "cover letters",
    "mock_interviews": "mock interviews",
    "quiz_generates": "quiz generations",
    "roadmap_generator": "roadmap generations",
    "project_feedback": "project feedback reviews",
    "salary_guide": "salary guide lookups",
    "hr_contact_list": "HR contact emails",
    QUIZ_30_MIN: "30-minute quizzes",
}

PLAN_RULES: dict[str, dict[str, Any]] = {
    "free": {
        "name": "Free Trial",
        "price": 0,
        "currency": "INR",
        "popular": False,
        "quiz_30_min_enabled": False,
        "limits": {
            "resumes": 1,
            "cover_letters": 1,
            "mock_interviews": 1,
            "quiz_generates": 1,
            "roadmap_generator": 1,
            "project_feedback": 1,
            "salary_guide": 1,
            "hr_contact_list": 0,
        },
    },
    "starter": {
        "name": "Starter",
        "price": 9,
        "currency": "INR",
        "popular": True,
        "quiz_30_min_enabled": False,
        "limits": {
            "resumes": 3,
            "cover_letters": 10,
            "mock_interviews": 3,
            "quiz_generates": 10,
            "roadmap_generator": 3,
            "project_feedback": 10,
            "salary_guide": 15,
            "hr_contact_list": 30,
        },
    },
    "pro": {
        "name": "Pro",
        "price": 69,
        "currency": "INR",
        "popular": False,
        "quiz_30_min_enabled": True,
        "limits": {
            "resumes": 10,
            "cover_letters": 50,
            "mock_interviews": 15,
            "quiz_generates": 50,
            "roadmap_generator": UNLIMITED,
            "project_feedback": UNLIMITED,
            "salary_guide": UNLIMITED,
            "hr_contact_list": 150,
        },
    },
    "premium": {
        "name": "Premium",
        "price": 109,
        "currency": "INR",
        "popular": False,
        "quiz_30_min_enabled": True,
        "limits": {
            "resumes": UNLIMITED,
            "cover_letters": UNLIMITED,
            "mock_interviews": UNLIMITED,
            "quiz_generates": UNLIMITED,
            "roadmap_generator": UNLIMITED,
            "project_feedback": UNLIMITED,
            "salary_guide": UNLIMITED,
            "hr_contact_list": 300,
        },
    },
}

CURRENCY_SYMBOLS = {"INR": "₹"}


class InvalidPlanError(ValueError):
    def __init__(self, tier: Any, message: str | None = None):
        self.tier = tier
        super().__init__(message or f"Unknown subscription plan: {tier!r}")


def empty_usage() -> dict[str, int]:
    return {name: 0 for name in USAGE_COUNTERS}


@dataclass
class UserSubscription:
    user_id: str
    tier: str
    start_date: datetime
    end_date: datetime
    auto_renew: bool = False
    usage: dict[str, int] = field(default_factory=empty_usage)
    last_reset: datetime = field(default_factory=utc_now)

    def copy(self) -> "UserSubscription":
        return replace(self, usage=dict(self.usage))


@dataclass(frozen=True)
class Reservation:
    """Outcome of a quota check. ``denial`` is ``quota``, ``capability`` or ``invalid``."""

    allowed: bool
    feature: str
    reason: str | None = None
    limit: int | None = None
    used: int | None = None
    denial: str | None = None


def normalize_tier(value: str | None) -> str | None:
    normalized = safe_text(value).lower()
    return normalized if normalized in PLAN_RULES else None


def tier_rank(tier: str) -> int:
    return TIER_ORDER.index(tier)


def next_tier(tier: str) -> str | None:
    position = tier_rank(tier)
    if position + 1 < len(TIER_ORDER):
        return TIER_ORDER[position + 1]
    return None


def format_price(tier: str) -> str:
    plan = PLAN_RULES[tier]
    symbol = CURRENCY_SYMBOLS.get(plan["currency"], plan["currency"] + " ")
    return f"{symbol}{plan['price']}/month"


def sentence_case(text: str) -> str:
    return text[:1].upper() + text[1:]


def upgrade_message(tier: str, feature: str, limit: int) -> str:
    label = FEATURE_LABELS.get(feature, feature)
    plan_name = PLAN_RULES[tier]["name"]
    upgrade_to = next_tier(tier)
    if upgrade_to is None:
        return f"You've reached your monthly limit of {limit} {label} on the {plan_name} plan. Usage resets with your next cycle."
    target = f"{PLAN_RULES[upgrade_to]['name']} ({format_price(upgrade_to)})"
    if limit == 0:
        return f"{sentence_case(label)} are not included in the {plan_name} plan. Upgrade to {target} to unlock this feature."
    if tier == "free":
        return f"You've used your free trial for {label}! Upgrade to {target} to continue using this feature."
    return f"You've reached your monthly limit of {limit} {label}. Upgrade to {target} for more!"


def capability_message(feature: str) -> str:
    capability = FEATURE_CAPABILITIES[feature]
    names = [PLAN_RULES[tier]["name"] for tier in TIER_ORDER if PLAN_RULES[tier][capability]]
    label = FEATURE_LABELS.get(feature, feature)
    return f"{sentence_case(label)} are available in {' and '.join(names)} plans. Upgrade to unlock this option."


def new_subscription(user_id: str, now: datetime) -> UserSubscription:
    return UserSubscription(
        user_id=user_id,
        tier="free",
        start_date=now,
        end_date=add_one_month(now),
        auto_renew=False,
        usage=empty_usage(),
        last_reset=now,
    )


def plan_payload(tier: str) -> dict[str, Any]:
    plan = PLAN_RULES[tier]
    return {
        "id": tier,
        "name": plan["name"],
        "price": plan["price"],
        "currency": plan["currency"],
        "popular": plan["popular"],
        "limits": dict(plan["limits"]),
        "quiz_30_min_enabled": plan["quiz_30_min_enabled"],
    }


def subscription_payload(subscription: UserSubscription) -> dict[str, Any]:
    plan = PLAN_RULES.get(subscription.tier)
    limits: dict[str, Any] = dict(plan["limits"]) if plan else {}
    remaining: dict[str, Any] = {}
    for counter in USAGE_COUNTERS:
        limit = limits.get(counter, 0)
        used = subscription.usage.get(counter, 0)
        remaining[counter] = UNLIMITED if limit == UNLIMITED else max(0, int(limit) - used)
    return {
        "user_id": subscription.user_id,
        "tier": subscription.tier,
        "plan_name": plan["name"] if plan else subscription.tier,
        "start_date": subscription.start_date.isoformat(),
        "end_date": subscription.end_date.isoformat(),
        "auto_renew": subscription.auto_renew,
        "last_reset": subscription.last_reset.isoformat(),
        "usage": dict(subscription.usage),
        "limits": limits,
        "remaining": remaining,
        "features": {"quiz_30_min_enabled": bool(plan and plan["quiz_30_min_enabled"])},
    }


class SubscriptionLedger:
    """Per-user plan state: quota checks, usage commits, lazy resets and upgrades.

    ``check_and_reserve`` has no side effects; ``commit_usage`` performs the
    increment. The pair is made exclusive per user with ``user_lock`` inside one
    process, and the store's conditional increment keeps counters under the
    plan ceiling across processes.
    """

    def __init__(
        self,
        store: "SubscriptionStore",
        reset_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
        enforce_limits: bool = True,
    ):
        self._store = store
        self._reset_window = timedelta(days=reset_days)
        self._clock = clock
        self._enforce_limits = enforce_limits
        self._locks_guard = threading.Lock()
        # user id -> [lock, number of threads holding or waiting on it]
        self._user_locks: dict[str, list[Any]] = {}

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._user_locks.setdefault(user_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._user_locks[user_id]

    @property
    def active_user_locks(self) -> int:
        with self._locks_guard:
            return len(self._user_locks)

    def get_or_create(self, user_id: str) -> UserSubscription:
        subscription = self._store.load(user_id)
        if subscription is None:
            if self._store.create(new_subscription(user_id, self._clock())):
                logger.info("Created free subscription for user %s.", user_id)
            subscription = self._store.load(user_id)
            if subscription is None:
                raise RuntimeError(f"Subscription for user {user_id} could not be created.")
            return subscription
        return self._apply_reset_if_due(subscription)

    def reset_if_due(self, user_id: str) -> None:
        subscription = self._store.load(user_id)
        if subscription is not None:
            self._apply_reset_if_due(subscription)

    def _apply_reset_if_due(self, subscription: UserSubscription) -> UserSubscription:
        now = self._clock()
        if now - subscription.last_reset < self._reset_window:
            return subscription
        if self._store.reset_usage(subscription.user_id, subscription.last_reset, now):
            logger.info("Reset monthly usage for user %s.", subscription.user_id)
        refreshed = self._store.load(subscription.user_id)
        return refreshed if refreshed is not None else subscription

    def check_and_reserve(self, user_id: str, feature: str) -> Reservation:
        counter = FEATURE_COUNTERS.get(feature)
        if counter is None:
            return Reservation(allowed=False, feature=feature, reason=f"Unknown feature: {feature}", denial="invalid")

        subscription = self.get_or_create(user_id)
        plan = PLAN_RULES.get(subscription.tier)
        if plan is None:
            return Reservation(allowed=False, feature=feature, reason="Invalid subscription plan", denial="invalid")

        used = int(subscription.usage.get(counter, 0))
        if not self._enforce_limits:
            return Reservation(allowed=True, feature=feature, used=used)

        capability = FEATURE_CAPABILITIES.get(feature)
        if capability and not plan[capability]:
            return Reservation(
                allowed=False,
                feature=feature,
                reason=capability_message(feature),
                used=used,
                denial="capability",
            )

        limit = plan["limits"][counter]
        if limit == UNLIMITED:
            return Reservation(allowed=True, feature=feature, used=used)
        if used >= int(limit):
            return Reservation(
                allowed=False,
                feature=feature,
                reason=upgrade_message(subscription.tier, counter, int(limit)),
                limit=int(limit),
                used=used,
                denial="quota",
            )
        return Reservation(allowed=True, feature=feature, limit=int(limit), used=used)

    def commit_usage(self, user_id: str, feature: str) -> bool:
        counter = FEATURE_COUNTERS.get(feature)
        if counter is None:
            raise ValueError(f"Unknown feature: {feature}")

        subscription = self.get_or_create(user_id)
        ceiling: int | None = None
        if self._enforce_limits:
            plan = PLAN_RULES.get(subscription.tier)
            limit = plan["limits"][counter] if plan else 0
            ceiling = None if limit == UNLIMITED else int(limit)

        applied = self._store.increment_usage(user_id, counter, ceiling)
        if not applied:
            logger.warning(
                "Usage commit for user %s on %s was not applied: %s plan ceiling %s reached.",
                user_id,
                counter,
                subscription.tier,
                ceiling,
            )
        return applied

    def upgrade(self, user_id: str, new_tier: str) -> UserSubscription:
        tier = normalize_tier(new_tier)
        if tier is None:
            raise InvalidPlanError(new_tier)

        current = self.get_or_create(user_id)
        if current.tier in PLAN_RULES and tier_rank(tier) < tier_rank(current.tier):
            raise InvalidPlanError(tier, f"Cannot move from {current.tier} down to {tier}.")
        now = self._clock()
        self._store.update_tier(user_id, tier, now, add_one_month(now))
        logger.info("Subscription for user %s set to %s.", user_id, tier)
        return self.get_or_create(user_id)
