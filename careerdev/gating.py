from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from careerdev.config import logger
from careerdev.subscriptions import Reservation, SubscriptionLedger

T = TypeVar("T")


@dataclass(frozen=True)
class GatedResult(Generic[T]):
    reservation: Reservation
    result: T | None = None
    committed: bool = False

    @property
    def allowed(self) -> bool:
        return self.reservation.allowed


def run_gated(ledger: SubscriptionLedger, user_id: str, feature: str, action: Callable[[], T]) -> GatedResult[T]:
    """Run ``action`` only if the user's quota allows it, and count it only if it returns.

    The check, the action and the commit share the user's lock, so two
    requests from one user cannot both pass the same last unit of quota.
    An exception from ``action`` propagates with nothing committed.
    """
    with ledger.user_lock(user_id):
        reservation = ledger.check_and_reserve(user_id, feature)
        if not reservation.allowed:
            logger.info("Denied %s for user %s (%s).", feature, user_id, reservation.denial)
            return GatedResult(reservation=reservation)
        result = action()
        committed = ledger.commit_usage(user_id, feature)
    return GatedResult(reservation=reservation, result=result, committed=committed)


def record_usage(ledger: SubscriptionLedger, user_id: str, feature: str) -> GatedResult[None]:
    return run_gated(ledger, user_id, feature, lambda: None)
