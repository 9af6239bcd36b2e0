"""Keyed stores for subscriptions and payment orders.

Components receive a store instance; nothing here keeps module-level state.
The in-memory stores serve tests and single-process development, the SQL
stores run on :class:`careerdev.db.Database` (SQLite or Postgres).
"""

from __future__ import annotations

import abc
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Iterable

from careerdev.db import DB_INTEGRITY_ERRORS, Database
from careerdev.subscriptions import USAGE_COUNTERS, UserSubscription
from careerdev.utils import now_utc_iso, parse_iso_datetime, safe_text

ORDER_STATUSES = ("pending", "verified", "applied", "failed", "rejected")


@dataclass(frozen=True)
class PaymentOrder:
    transaction_id: str
    gateway: str
    user_id: str
    tier: str
    amount: str
    currency: str
    status: str = "pending"
    gateway_payment_id: str | None = None
    reason: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "gateway": self.gateway,
            "tier": self.tier,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "gateway_payment_id": self.gateway_payment_id,
            "reason": self.reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class SubscriptionStore(abc.ABC):
    @abc.abstractmethod
    def load(self, user_id: str) -> UserSubscription | None:
        """Return the stored record or None."""

    @abc.abstractmethod
    def create(self, subscription: UserSubscription) -> bool:
        """Insert the record unless one exists for the user. Returns True if inserted."""

    @abc.abstractmethod
    def increment_usage(self, user_id: str, counter: str, ceiling: int | None) -> bool:
        """Atomically add 1 to ``counter`` while it is below ``ceiling`` (None: no ceiling)."""

    @abc.abstractmethod
    def reset_usage(self, user_id: str, expected_last_reset: datetime, now: datetime) -> bool:
        """Zero every counter if ``last_reset`` still equals ``expected_last_reset``."""

    @abc.abstractmethod
    def update_tier(self, user_id: str, tier: str, start_date: datetime, end_date: datetime) -> None:
        """Change tier and billing period without touching usage."""


class PaymentOrderStore(abc.ABC):
    @abc.abstractmethod
    def create(self, order: PaymentOrder) -> None:
        """Persist a new order. Raises ValueError on a duplicate transaction id."""

    @abc.abstractmethod
    def get(self, transaction_id: str) -> PaymentOrder | None:
        """Return the order or None."""

    @abc.abstractmethod
    def transition(self, transaction_id: str, from_statuses: Iterable[str], to_status: str, **changes: Any) -> bool:
        """Move the order to ``to_status`` only if its status is one of ``from_statuses``."""


def check_counter(counter: str) -> None:
    if counter not in USAGE_COUNTERS:
        raise ValueError(f"Unknown usage counter: {counter}")


class InMemorySubscriptionStore(SubscriptionStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, UserSubscription] = {}

    def load(self, user_id: str) -> UserSubscription | None:
        with self._lock:
            record = self._records.get(user_id)
            return record.copy() if record else None

    def create(self, subscription: UserSubscription) -> bool:
        with self._lock:
            if subscription.user_id in self._records:
                return False
            self._records[subscription.user_id] = subscription.copy()
            return True

    def increment_usage(self, user_id: str, counter: str, ceiling: int | None) -> bool:
        check_counter(counter)
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return False
            used = record.usage.get(counter, 0)
            if ceiling is not None and used >= ceiling:
                return False
            record.usage[counter] = used + 1
            return True

    def reset_usage(self, user_id: str, expected_last_reset: datetime, now: datetime) -> bool:
        with self._lock:
            record = self._records.get(user_id)
            if record is None or record.last_reset != expected_last_reset:
                return False
            record.usage = {name: 0 for name in USAGE_COUNTERS}
            record.last_reset = now
            return True

    def update_tier(self, user_id: str, tier: str, start_date: datetime, end_date: datetime) -> None:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                raise KeyError(user_id)
            record.tier = tier
            record.start_date = start_date
            record.end_date = end_date


class InMemoryPaymentOrderStore(PaymentOrderStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orders: dict[str, PaymentOrder] = {}

    def create(self, order: PaymentOrder) -> None:
        with self._lock:
            if order.transaction_id in self._orders:
                raise ValueError(f"Duplicate transaction id: {order.transaction_id}")
            stamp = now_utc_iso()
            self._orders[order.transaction_id] = replace(order, created_at=order.created_at or stamp, updated_at=stamp)

    def get(self, transaction_id: str) -> PaymentOrder | None:
        with self._lock:
            return self._orders.get(transaction_id)

    def transition(self, transaction_id: str, from_statuses: Iterable[str], to_status: str, **changes: Any) -> bool:
        with self._lock:
            order = self._orders.get(transaction_id)
            if order is None or order.status not in set(from_statuses):
                return False
            self._orders[transaction_id] = replace(order, status=to_status, updated_at=now_utc_iso(), **changes)
            return True


def subscription_from_row(row: Any) -> UserSubscription:
    return UserSubscription(
        user_id=str(row["user_id"]),
        tier=safe_text(row["tier"]),
        start_date=parse_iso_datetime(str(row["start_date"])),
        end_date=parse_iso_datetime(str(row["end_date"])),
        auto_renew=bool(int(row["auto_renew"])),
        usage={name: int(row[f"usage_{name}"]) for name in USAGE_COUNTERS},
        last_reset=parse_iso_datetime(str(row["last_reset"])),
    )


class SQLSubscriptionStore(SubscriptionStore):
    def __init__(self, database: Database):
        self.database = database

    def load(self, user_id: str) -> UserSubscription | None:
        connection = self.database.connect()
        try:
            row = connection.execute("SELECT * FROM subscriptions WHERE user_id = ?", (user_id,)).fetchone()
            return subscription_from_row(row) if row else None
        finally:
            connection.close()

    def create(self, subscription: UserSubscription) -> bool:
        columns = ["user_id", "tier", "start_date", "end_date", "auto_renew"]
        columns += [f"usage_{name}" for name in USAGE_COUNTERS]
        columns += ["last_reset", "updated_at"]
        values = [
            subscription.user_id,
            subscription.tier,
            subscription.start_date.isoformat(),
            subscription.end_date.isoformat(),
            1 if subscription.auto_renew else 0,
            *[int(subscription.usage.get(name, 0)) for name in USAGE_COUNTERS],
            subscription.last_reset.isoformat(),
            now_utc_iso(),
        ]
        placeholders = ", ".join("?" for _ in columns)
        with self.database.lock:
            connection = self.database.connect()
            try:
                connection.execute(
                    f"INSERT INTO subscriptions ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
                connection.commit()
                return True
            except DB_INTEGRITY_ERRORS:
                connection.rollback()
                return False
            finally:
                connection.close()

    def increment_usage(self, user_id: str, counter: str, ceiling: int | None) -> bool:
        check_counter(counter)
        column = f"usage_{counter}"
        if ceiling is None:
            query = f"UPDATE subscriptions SET {column} = {column} + 1, updated_at = ? WHERE user_id = ?"
            params: tuple[Any, ...] = (now_utc_iso(), user_id)
        else:
            query = f"UPDATE subscriptions SET {column} = {column} + 1, updated_at = ? WHERE user_id = ? AND {column} < ?"
            params = (now_utc_iso(), user_id, int(ceiling))
        with self.database.lock:
            connection = self.database.connect()
            try:
                cursor = connection.execute(query, params)
                connection.commit()
                return cursor.rowcount == 1
            finally:
                connection.close()

    def reset_usage(self, user_id: str, expected_last_reset: datetime, now: datetime) -> bool:
        zeroed = ", ".join(f"usage_{name} = 0" for name in USAGE_COUNTERS)
        with self.database.lock:
            connection = self.database.connect()
            try:
                cursor = connection.execute(
                    f"UPDATE subscriptions SET {zeroed}, last_reset = ?, updated_at = ? WHERE user_id = ? AND last_reset = ?",
                    (now.isoformat(), now_utc_iso(), user_id, expected_last_reset.isoformat()),
                )
                connection.commit()
                return cursor.rowcount == 1
            finally:
                connection.close()

    def update_tier(self, user_id: str, tier: str, start_date: datetime, end_date: datetime) -> None:
        with self.database.lock:
            connection = self.database.connect()
            try:
                cursor = connection.execute(
                    "UPDATE subscriptions SET tier = ?, start_date = ?, end_date = ?, updated_at = ? WHERE user_id = ?",
                    (tier, start_date.isoformat(), end_date.isoformat(), now_utc_iso(), user_id),
                )
                if cursor.rowcount != 1:
                    connection.rollback()
                    raise KeyError(user_id)
                connection.commit()
            finally:
                connection.close()


def order_from_row(row: Any) -> PaymentOrder:
    return PaymentOrder(
        transaction_id=str(row["transaction_id"]),
        gateway=str(row["gateway"]),
        user_id=str(row["user_id"]),
        tier=str(row["tier"]),
        amount=str(row["amount"]),
        currency=str(row["currency"]),
        status=str(row["status"]),
        gateway_payment_id=row["gateway_payment_id"],
        reason=row["reason"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


class SQLPaymentOrderStore(PaymentOrderStore):
    MUTABLE_FIELDS = {"gateway_payment_id", "reason"}

    def __init__(self, database: Database):
        self.database = database

    def create(self, order: PaymentOrder) -> None:
        stamp = now_utc_iso()
        with self.database.lock:
            connection = self.database.connect()
            try:
                connection.execute(
                    """
                    INSERT INTO payment_orders
                    (transaction_id, gateway, user_id, tier, amount, currency, status, gateway_payment_id, reason, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        order.transaction_id,
                        order.gateway,
                        order.user_id,
                        order.tier,
                        order.amount,
                        order.currency,
                        order.status,
                        order.gateway_payment_id,
                        order.reason,
                        order.created_at or stamp,
                        stamp,
                    ),
                )
                connection.commit()
            except DB_INTEGRITY_ERRORS as exc:
                connection.rollback()
                raise ValueError(f"Duplicate transaction id: {order.transaction_id}") from exc
            finally:
                connection.close()

    def get(self, transaction_id: str) -> PaymentOrder | None:
        connection = self.database.connect()
        try:
            row = connection.execute(
                "SELECT * FROM payment_orders WHERE transaction_id = ? LIMIT 1",
                (transaction_id,),
            ).fetchone()
            return order_from_row(row) if row else None
        finally:
            connection.close()

    def transition(self, transaction_id: str, from_statuses: Iterable[str], to_status: str, **changes: Any) -> bool:
        unknown = set(changes) - self.MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported order fields: {sorted(unknown)}")
        allowed = list(from_statuses)
        assignments = ["status = ?", "updated_at = ?"] + [f"{name} = ?" for name in changes]
        params: list[Any] = [to_status, now_utc_iso(), *changes.values(), transaction_id, *allowed]
        status_placeholders = ", ".join("?" for _ in allowed)
        with self.database.lock:
            connection = self.database.connect()
            try:
                cursor = connection.cursor()
                self.database.begin_write_transaction(cursor)
                cursor.execute(
                    f"UPDATE payment_orders SET {', '.join(assignments)} WHERE transaction_id = ? AND status IN ({status_placeholders})",
                    params,
                )
                updated = cursor.rowcount == 1
                connection.commit()
                return updated
            finally:
                connection.close()
