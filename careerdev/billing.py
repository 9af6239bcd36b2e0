"""Checkout initiation and callback reconciliation.

An order moves ``pending -> verified -> applied``, or ends as ``failed`` or
``rejected``. Every move is a conditional transition in the order store, so a
replayed or concurrent callback for the same transaction finds the order
already past ``pending`` and changes nothing. An upgrade that fails after
verification puts the order back to ``pending`` for the next delivery.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import urlencode

from careerdev.config import FRONTEND_BASE_URL, PLATFORM_TAG, PUBLIC_BASE_URL, TRANSACTION_PREFIX, logger
from careerdev.payments import GatewayConfigError, PaymentCallback, PaymentRequest, PaymentVerifier, generate_transaction_id
from careerdev.storage import PaymentOrder, PaymentOrderStore
from careerdev.subscriptions import PLAN_RULES, InvalidPlanError, SubscriptionLedger, normalize_tier
from careerdev.utils import format_amount, parse_amount, safe_text

SUBSCRIPTION_PURPOSE = "subscription"


@dataclass(frozen=True)
class ReconcileOutcome:
    gateway: str
    transaction_id: str
    verified: bool
    applied: bool
    status: str
    reported_status: str = ""
    tier: str | None = None
    user_id: str | None = None
    reason: str | None = None
    duplicate: bool = False
    retryable: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "gateway": self.gateway,
            "transaction_id": self.transaction_id,
            "verified": self.verified,
            "applied": self.applied,
            "status": self.status,
            "reported_status": self.reported_status,
            "tier": self.tier,
            "reason": self.reason,
            "duplicate": self.duplicate,
            "retryable": self.retryable,
        }


class PaymentReconciler:
    def __init__(
        self,
        verifiers: Mapping[str, PaymentVerifier],
        orders: PaymentOrderStore,
        ledger: SubscriptionLedger,
        *,
        platform_tag: str = PLATFORM_TAG,
        public_base_url: str = PUBLIC_BASE_URL,
        frontend_base_url: str = FRONTEND_BASE_URL,
        transaction_prefix: str = TRANSACTION_PREFIX,
    ):
        self._verifiers = dict(verifiers)
        self._orders = orders
        self._ledger = ledger
        self.platform_tag = platform_tag
        self.public_base_url = public_base_url.rstrip("/")
        self.frontend_base_url = frontend_base_url.rstrip("/")
        self.transaction_prefix = transaction_prefix

    @property
    def enabled_gateways(self) -> list[str]:
        return list(self._verifiers)

    def verifier(self, gateway: str) -> PaymentVerifier:
        verifier = self._verifiers.get(safe_text(gateway).lower())
        if verifier is None:
            raise GatewayConfigError(f"Payment gateway {gateway!r} is not configured.")
        return verifier

    def initiate(self, user_id: str, tier: str, gateway: str, email: str, name: str = "") -> PaymentRequest:
        normalized = normalize_tier(tier)
        if normalized is None or PLAN_RULES[normalized]["price"] <= 0:
            raise InvalidPlanError(tier)
        verifier = self.verifier(gateway)
        plan = PLAN_RULES[normalized]

        transaction_id = generate_transaction_id(self.transaction_prefix)
        amount = format_amount(plan["price"])
        redirect_query = urlencode({"txnid": transaction_id, "plan": normalized, "platform": self.platform_tag})
        request = verifier.build_request(
            transaction_id=transaction_id,
            amount=amount,
            product_info=f"CareerDev-{normalized}",
            first_name=safe_text(name) or "User",
            email=safe_text(email),
            user_fields=(normalized, user_id, self.platform_tag, transaction_id, SUBSCRIPTION_PURPOSE),
            callback_url=f"{self.public_base_url}/payments/{verifier.gateway}/callback",
            redirect_url=f"{self.frontend_base_url}/payment-callback?{redirect_query}",
        )
        self._orders.create(
            PaymentOrder(
                transaction_id=transaction_id,
                gateway=verifier.gateway,
                user_id=user_id,
                tier=normalized,
                amount=amount,
                currency=plan["currency"],
            )
        )
        logger.info("Created %s order %s for user %s (%s).", verifier.gateway, transaction_id, user_id, normalized)
        return request

    def mark_failed(self, transaction_id: str, reason: str) -> bool:
        return self._orders.transition(transaction_id, ["pending"], "failed", reason=reason)

    def reconcile(self, gateway: str, raw_fields: Mapping[str, Any]) -> ReconcileOutcome:
        gateway = safe_text(gateway).lower()
        verifier = self._verifiers.get(gateway)
        if verifier is None:
            logger.error("Callback received for %s but that gateway is not configured.", gateway)
            return ReconcileOutcome(
                gateway=gateway,
                transaction_id="",
                verified=False,
                applied=False,
                status="gateway_disabled",
                reason="Payment gateway is not configured.",
            )

        callback = verifier.parse_callback(raw_fields)
        if not verifier.verify(callback):
            logger.warning("Rejected %s callback for %s: signature mismatch.", gateway, callback.transaction_id or "<missing>")
            return self._outcome(callback, verified=False, status="unverified", reason="Signature verification failed.")

        order = self._orders.get(callback.transaction_id)
        if order is None or order.gateway != gateway:
            logger.warning("Verified %s callback references unknown order %s.", gateway, callback.transaction_id)
            return self._outcome(callback, verified=True, status="unknown_order", reason="Order not found.")

        if order.status != "pending":
            return self._already_processed(callback, order)

        mismatch = self._mismatch_reason(order, callback)
        if mismatch:
            if self._orders.transition(order.transaction_id, ["pending"], "rejected", reason=mismatch):
                logger.warning("Rejected order %s: %s", order.transaction_id, mismatch)
                return self._outcome(callback, verified=True, status="rejected", order=order, reason=mismatch)
            return self._already_processed(callback, self._orders.get(order.transaction_id) or order)

        if callback.status == "pending":
            return self._outcome(callback, verified=True, status="pending", order=order)

        if not callback.succeeded:
            reason = f"Gateway reported status {callback.status or 'unknown'}."
            if self._orders.transition(
                order.transaction_id,
                ["pending"],
                "failed",
                reason=reason,
                gateway_payment_id=callback.gateway_payment_id,
            ):
                logger.info("Order %s failed at %s: %s", order.transaction_id, gateway, reason)
                return self._outcome(callback, verified=True, status="failed", order=order, reason=reason)
            return self._already_processed(callback, self._orders.get(order.transaction_id) or order)

        if not self._orders.transition(
            order.transaction_id,
            ["pending"],
            "verified",
            gateway_payment_id=callback.gateway_payment_id,
        ):
            return self._already_processed(callback, self._orders.get(order.transaction_id) or order)

        try:
            self._ledger.upgrade(order.user_id, order.tier)
        except InvalidPlanError as exc:
            self._orders.transition(order.transaction_id, ["verified"], "rejected", reason=str(exc))
            logger.error("Order %s cannot be applied: %s", order.transaction_id, exc)
            return self._outcome(callback, verified=True, status="rejected", order=order, reason=str(exc))
        except Exception:
            # Back to pending so a redelivered callback can apply it.
            reason = "Upgrade could not be applied; awaiting callback retry."
            self._orders.transition(order.transaction_id, ["verified"], "pending", reason=reason)
            logger.exception("Upgrade for order %s failed after verification.", order.transaction_id)
            return self._outcome(callback, verified=True, status="pending", order=order, reason=reason, retryable=True)

        self._orders.transition(order.transaction_id, ["verified"], "applied", reason=None)
        logger.info("Applied %s upgrade for user %s from order %s.", order.tier, order.user_id, order.transaction_id)
        return self._outcome(callback, verified=True, applied=True, status="applied", order=order)

    def _mismatch_reason(self, order: PaymentOrder, callback: PaymentCallback) -> str | None:
        expected = parse_amount(order.amount)
        reported = parse_amount(callback.amount)
        if expected is None or reported is None or expected != reported:
            return f"Amount mismatch: expected {order.amount}, got {callback.amount or 'nothing'}."
        if any(callback.user_fields):
            plan_id, user_id, platform = (tuple(callback.user_fields) + ("", "", ""))[:3]
            if platform != self.platform_tag:
                return "Platform tag mismatch."
            if plan_id != order.tier:
                return "Plan mismatch."
            if user_id != order.user_id:
                return "User mismatch."
        return None

    def _already_processed(self, callback: PaymentCallback, order: PaymentOrder) -> ReconcileOutcome:
        logger.info("Ignoring repeated %s callback for order %s (%s).", callback.gateway, order.transaction_id, order.status)
        return self._outcome(
            callback,
            verified=True,
            applied=order.status == "applied",
            status=order.status,
            order=order,
            reason=order.reason,
            duplicate=True,
        )

    def _outcome(
        self,
        callback: PaymentCallback,
        *,
        verified: bool,
        status: str,
        applied: bool = False,
        order: PaymentOrder | None = None,
        reason: str | None = None,
        duplicate: bool = False,
        retryable: bool = False,
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            gateway=callback.gateway,
            transaction_id=callback.transaction_id,
            verified=verified,
            applied=applied,
            status=status,
            reported_status=callback.status,
            tier=order.tier if order else None,
            user_id=order.user_id if order else None,
            reason=reason,
            duplicate=duplicate,
            retryable=retryable,
        )
