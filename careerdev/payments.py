"""Signature construction and verification for the supported payment gateways.

Each gateway is a named strategy with its own request and response formulas.
PayU signs with SHA-512 over pipe-joined fields (the response formula runs
in a different order from the request formula). PhonePe signs with SHA-256
over the base64 payload plus endpoint and salt, suffixed with ``###<index>``.
Nothing in this module touches storage or the network.
"""

from __future__ import annotations

import abc
import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

from careerdev.config import TRANSACTION_PREFIX, logger
from careerdev.utils import format_amount, parse_amount, safe_text

PAYU_USER_FIELDS = ("udf1", "udf2", "udf3", "udf4", "udf5")
PAYU_RESERVED_EMPTY_FIELDS = 5
PHONEPE_PAY_ENDPOINT = "/pg/v1/pay"


class GatewayConfigError(RuntimeError):
    pass


def field_value(fields: Mapping[str, Any], name: str) -> str:
    value = fields.get(name)
    return "" if value is None else str(value)


def sha512_hex(value: str) -> str:
    return hashlib.sha512(value.encode("utf-8")).hexdigest()


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def signatures_match(expected: str, supplied: str | None) -> bool:
    return hmac.compare_digest(
        expected.lower().encode("utf-8"),
        safe_text(supplied).lower().encode("utf-8"),
    )


def generate_transaction_id(prefix: str = TRANSACTION_PREFIX) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class PaymentRequest:
    gateway: str
    merchant_key: str
    transaction_id: str
    amount: str
    product_info: str
    first_name: str
    email: str
    user_fields: tuple[str, ...]
    signature: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentCallback:
    gateway: str
    transaction_id: str
    amount: str
    status: str
    signature: str
    fields: dict[str, Any] = field(default_factory=dict)
    user_fields: tuple[str, ...] = ()
    gateway_payment_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class GatewayStrategy(abc.ABC):
    name = ""

    @abc.abstractmethod
    def request_signature(self, fields: Mapping[str, Any], secret: str, salt_index: str) -> str:
        """Signature the gateway expects on an outbound request."""

    @abc.abstractmethod
    def callback_signature(self, fields: Mapping[str, Any], secret: str, salt_index: str) -> str:
        """Signature the gateway attaches to its callback."""

    @abc.abstractmethod
    def build_request(
        self,
        merchant_key: str,
        secret: str,
        salt_index: str,
        *,
        transaction_id: str,
        amount: str,
        product_info: str,
        first_name: str,
        email: str,
        user_fields: tuple[str, ...],
        callback_url: str,
        redirect_url: str,
    ) -> PaymentRequest:
        """Assemble and sign the outbound field set."""

    @abc.abstractmethod
    def parse_callback(self, raw: Mapping[str, Any]) -> PaymentCallback:
        """Normalize raw gateway fields. Never raises on malformed input."""


class PayUStrategy(GatewayStrategy):
    name = "payu"

    def request_signature(self, fields: Mapping[str, Any], secret: str, salt_index: str = "1") -> str:
        ordered = [field_value(fields, name) for name in ("key", "txnid", "amount", "productinfo", "firstname", "email")]
        ordered += [field_value(fields, name) for name in PAYU_USER_FIELDS]
        ordered += [""] * PAYU_RESERVED_EMPTY_FIELDS
        ordered.append(secret)
        return sha512_hex("|".join(ordered))

    def callback_signature(self, fields: Mapping[str, Any], secret: str, salt_index: str = "1") -> str:
        ordered = [secret, field_value(fields, "status")]
        ordered += [""] * PAYU_RESERVED_EMPTY_FIELDS
        ordered += [field_value(fields, name) for name in reversed(PAYU_USER_FIELDS)]
        ordered += [field_value(fields, name) for name in ("email", "firstname", "productinfo", "amount", "txnid", "key")]
        additional_charges = field_value(fields, "additionalCharges")
        if additional_charges:
            ordered.insert(0, additional_charges)
        return sha512_hex("|".join(ordered))

    def build_request(
        self,
        merchant_key: str,
        secret: str,
        salt_index: str,
        *,
        transaction_id: str,
        amount: str,
        product_info: str,
        first_name: str,
        email: str,
        user_fields: tuple[str, ...],
        callback_url: str,
        redirect_url: str,
    ) -> PaymentRequest:
        padded = (tuple(user_fields) + ("",) * len(PAYU_USER_FIELDS))[: len(PAYU_USER_FIELDS)]
        payload: dict[str, Any] = {
            "key": merchant_key,
            "txnid": transaction_id,
            "amount": amount,
            "productinfo": product_info,
            "firstname": first_name,
            "email": email,
            "phone": "",
            "surl": callback_url,
            "furl": callback_url,
            "service_provider": "payu_paisa",
            **dict(zip(PAYU_USER_FIELDS, padded)),
        }
        signature = self.request_signature(payload, secret, salt_index)
        payload["hash"] = signature
        return PaymentRequest(
            gateway=self.name,
            merchant_key=merchant_key,
            transaction_id=transaction_id,
            amount=amount,
            product_info=product_info,
            first_name=first_name,
            email=email,
            user_fields=padded,
            signature=signature,
            payload=payload,
        )

    def parse_callback(self, raw: Mapping[str, Any]) -> PaymentCallback:
        fields = {str(key): "" if value is None else str(value) for key, value in raw.items()}
        return PaymentCallback(
            gateway=self.name,
            transaction_id=safe_text(fields.get("txnid")),
            amount=safe_text(fields.get("amount")),
            status=safe_text(fields.get("status")).lower(),
            signature=safe_text(fields.get("hash")),
            fields=fields,
            user_fields=tuple(safe_text(fields.get(name)) for name in PAYU_USER_FIELDS),
            gateway_payment_id=safe_text(fields.get("mihpayid")) or None,
        )


class PhonePeStrategy(GatewayStrategy):
    name = "phonepe"

    def request_signature(self, fields: Mapping[str, Any], secret: str, salt_index: str = "1") -> str:
        endpoint = field_value(fields, "endpoint") or PHONEPE_PAY_ENDPOINT
        digest = sha256_hex(field_value(fields, "request") + endpoint + secret)
        return f"{digest}###{salt_index}"

    def callback_signature(self, fields: Mapping[str, Any], secret: str, salt_index: str = "1") -> str:
        digest = sha256_hex(field_value(fields, "response") + secret)
        return f"{digest}###{salt_index}"

    def status_signature(self, merchant_id: str, transaction_id: str, secret: str, salt_index: str = "1") -> str:
        digest = sha256_hex(f"/pg/v1/status/{merchant_id}/{transaction_id}" + secret)
        return f"{digest}###{salt_index}"

    def build_request(
        self,
        merchant_key: str,
        secret: str,
        salt_index: str,
        *,
        transaction_id: str,
        amount: str,
        product_info: str,
        first_name: str,
        email: str,
        user_fields: tuple[str, ...],
        callback_url: str,
        redirect_url: str,
    ) -> PaymentRequest:
        rupees = parse_amount(amount) or Decimal(0)
        merchant_user_id = user_fields[1] if len(user_fields) > 1 else ""
        body = {
            "merchantId": merchant_key,
            "merchantTransactionId": transaction_id,
            "merchantUserId": merchant_user_id,
            "amount": int((rupees * 100).to_integral_value()),
            "redirectUrl": redirect_url,
            "redirectMode": "POST",
            "callbackUrl": callback_url,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        encoded = base64.b64encode(json.dumps(body, separators=(",", ":")).encode("utf-8")).decode("utf-8")
        payload = {"request": encoded, "endpoint": PHONEPE_PAY_ENDPOINT}
        signature = self.request_signature(payload, secret, salt_index)
        payload["x_verify"] = signature
        return PaymentRequest(
            gateway=self.name,
            merchant_key=merchant_key,
            transaction_id=transaction_id,
            amount=amount,
            product_info=product_info,
            first_name=first_name,
            email=email,
            user_fields=tuple(user_fields),
            signature=signature,
            payload=payload,
        )

    def parse_callback(self, raw: Mapping[str, Any]) -> PaymentCallback:
        response = field_value(raw, "response").strip()
        decoded: dict[str, Any] = {}
        try:
            parsed = json.loads(base64.b64decode(response, validate=True).decode("utf-8"))
            if isinstance(parsed, dict):
                decoded = parsed
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("PhonePe callback carried an undecodable response payload.")

        data = decoded.get("data") if isinstance(decoded.get("data"), dict) else {}
        code = safe_text(str(decoded.get("code") or ""))
        if code == "PAYMENT_SUCCESS":
            status = "success"
        elif code == "PAYMENT_PENDING":
            status = "pending"
        else:
            status = "failure"

        paise = parse_amount(data.get("amount"))
        amount = format_amount(paise / 100) if paise is not None and paise.is_finite() else ""
        return PaymentCallback(
            gateway=self.name,
            transaction_id=safe_text(str(data.get("merchantTransactionId") or "")),
            amount=amount,
            status=status,
            signature=safe_text(field_value(raw, "x_verify")),
            fields={"response": response, "code": code},
            gateway_payment_id=safe_text(str(data.get("transactionId") or "")) or None,
        )


GATEWAY_STRATEGIES: dict[str, GatewayStrategy] = {
    PayUStrategy.name: PayUStrategy(),
    PhonePeStrategy.name: PhonePeStrategy(),
}


def get_strategy(gateway: str) -> GatewayStrategy:
    strategy = GATEWAY_STRATEGIES.get(safe_text(gateway).lower())
    if strategy is None:
        raise GatewayConfigError(f"Unsupported payment gateway: {gateway!r}")
    return strategy


def build_request_signature(gateway: str, fields: Mapping[str, Any], secret: str, salt_index: str = "1") -> str:
    return get_strategy(gateway).request_signature(fields, secret, salt_index)


def verify_callback(
    gateway: str,
    fields: Mapping[str, Any],
    secret: str,
    supplied_signature: str | None,
    salt_index: str = "1",
) -> bool:
    try:
        expected = get_strategy(gateway).callback_signature(fields, secret, salt_index)
    except Exception:
        logger.exception("Unable to compute %s callback signature.", gateway)
        return False
    return signatures_match(expected, supplied_signature)


class PaymentVerifier:
    """A gateway strategy bound to its merchant credentials."""

    def __init__(self, gateway: str, merchant_key: str, secret: str, salt_index: str = "1"):
        self.strategy = get_strategy(gateway)
        if not safe_text(merchant_key) or not safe_text(secret):
            raise GatewayConfigError(f"{self.strategy.name} merchant key or secret is not configured.")
        self.gateway = self.strategy.name
        self.merchant_key = safe_text(merchant_key)
        self._secret = safe_text(secret)
        self.salt_index = safe_text(salt_index) or "1"

    def build_request_signature(self, fields: Mapping[str, Any]) -> str:
        return self.strategy.request_signature(fields, self._secret, self.salt_index)

    def verify_callback(self, fields: Mapping[str, Any], supplied_signature: str | None) -> bool:
        return verify_callback(self.gateway, fields, self._secret, supplied_signature, self.salt_index)

    def verify(self, callback: PaymentCallback) -> bool:
        return self.verify_callback(callback.fields, callback.signature)

    def build_request(self, **request_fields: Any) -> PaymentRequest:
        return self.strategy.build_request(self.merchant_key, self._secret, self.salt_index, **request_fields)

    def parse_callback(self, raw: Mapping[str, Any]) -> PaymentCallback:
        return self.strategy.parse_callback(raw)

    def status_signature(self, transaction_id: str) -> str:
        if not isinstance(self.strategy, PhonePeStrategy):
            raise GatewayConfigError(f"{self.gateway} has no status-check signature.")
        return self.strategy.status_signature(self.merchant_key, transaction_id, self._secret, self.salt_index)
