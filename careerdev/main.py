from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any
from urllib.parse import urlencode

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from careerdev import ai
from careerdev.auth import require_authenticated_user
from careerdev.billing import PaymentReconciler, ReconcileOutcome
from careerdev.config import (
    BYPASS_PLAN_LIMITS,
    CORS_ALLOW_ORIGIN_REGEX,
    CORS_ALLOW_ORIGINS,
    DATABASE_URL,
    DB_BACKEND,
    DB_PATH,
    FRONTEND_BASE_URL,
    PAYMENT_GATEWAY,
    PAYU_BASE_URL,
    PAYU_KEY,
    PAYU_SALT,
    PHONEPE_BASE_URL,
    PHONEPE_HTTP_TIMEOUT_SECONDS,
    PHONEPE_MERCHANT_ID,
    PHONEPE_SALT_INDEX,
    PHONEPE_SALT_KEY,
    PLATFORM_TAG,
    USAGE_RESET_DAYS,
    logger,
)
from careerdev.db import Database
from careerdev.gating import record_usage, run_gated
from careerdev.payments import PHONEPE_PAY_ENDPOINT, GatewayConfigError, PaymentVerifier
from careerdev.storage import SQLPaymentOrderStore, SQLSubscriptionStore
from careerdev.subscriptions import (
    PLAN_RULES,
    QUIZ_30_MIN,
    TIER_ORDER,
    InvalidPlanError,
    Reservation,
    SubscriptionLedger,
    normalize_tier,
    plan_payload,
    subscription_payload,
    tier_rank,
)
from careerdev.utils import safe_text

GATEWAY_CREDENTIALS = {
    "payu": (PAYU_KEY, PAYU_SALT, "1"),
    "phonepe": (PHONEPE_MERCHANT_ID, PHONEPE_SALT_KEY, PHONEPE_SALT_INDEX),
}

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_origin_regex=CORS_ALLOW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def load_payment_verifiers() -> dict[str, PaymentVerifier]:
    if PAYMENT_GATEWAY in GATEWAY_CREDENTIALS:
        requested = [PAYMENT_GATEWAY]
    else:
        if PAYMENT_GATEWAY != "auto":
            logger.warning("PAYMENT_GATEWAY=%s is not supported. Falling back to auto.", PAYMENT_GATEWAY)
        requested = list(GATEWAY_CREDENTIALS)

    verifiers: dict[str, PaymentVerifier] = {}
    for gateway in requested:
        merchant_key, secret, salt_index = GATEWAY_CREDENTIALS[gateway]
        try:
            verifiers[gateway] = PaymentVerifier(gateway, merchant_key, secret, salt_index)
        except GatewayConfigError as exc:
            if len(requested) == 1:
                logger.error("%s Payments are disabled.", exc)
            else:
                logger.warning("%s %s checkout is disabled.", exc, gateway)
    if not verifiers:
        logger.warning("No payment gateway is configured. Paid upgrades are unavailable.")
    return verifiers


database = Database(DB_BACKEND, DATABASE_URL, DB_PATH)
database.init_schema()
ledger = SubscriptionLedger(
    SQLSubscriptionStore(database),
    reset_days=USAGE_RESET_DAYS,
    enforce_limits=not BYPASS_PLAN_LIMITS,
)
order_store = SQLPaymentOrderStore(database)
reconciler = PaymentReconciler(load_payment_verifiers(), order_store, ledger)
DEFAULT_GATEWAY = reconciler.enabled_gateways[0] if reconciler.enabled_gateways else ""


class QuizGenerateRequest(BaseModel):
    topic: str
    num_questions: int = 10
    total_questions: int | None = None
    batch: int = 1
    duration_minutes: int | None = None
    auth_token: str | None = None


class PaymentCheckoutRequest(BaseModel):
    plan_id: str
    gateway: str | None = None
    name: str | None = None
    email: str | None = None
    auth_token: str | None = None


def usage_error(reservation: Reservation, user_id: str) -> HTTPException:
    if reservation.denial == "capability":
        status_code = 403
    elif reservation.denial == "quota":
        status_code = 429
    else:
        status_code = 400
    return HTTPException(
        status_code=status_code,
        detail={
            "message": reservation.reason,
            "feature": reservation.feature,
            "limit": reservation.limit,
            "used": reservation.used,
            "upgrade_url": f"{FRONTEND_BASE_URL}/billing",
            "subscription": subscription_payload(ledger.get_or_create(user_id)),
        },
    )


def ai_service_error(detail: str | None = None) -> HTTPException:
    message = "AI generation is temporarily unavailable. Please retry shortly."
    if detail:
        message = f"{message} ({detail})"
    return HTTPException(status_code=503, detail={"message": message})


def phonepe_request(path: str, payload: dict[str, Any] | None, x_verify: str) -> dict[str, Any]:
    url = f"{PHONEPE_BASE_URL}/{path.lstrip('/')}"
    headers = {
        "Content-Type": "application/json",
        "X-VERIFY": x_verify,
    }
    if payload is None:
        headers["X-MERCHANT-ID"] = PHONEPE_MERCHANT_ID
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8") if payload is not None else None,
        method="POST" if payload is not None else "GET",
        headers=headers,
    )
    try:
        with urllib.request.urlopen(req, timeout=PHONEPE_HTTP_TIMEOUT_SECONDS) as resp:
            raw = resp.read().decode("utf-8", errors="ignore")
            return json.loads(raw or "{}")
    except urllib.error.HTTPError as exc:
        details = ""
        try:
            details = exc.read().decode("utf-8", errors="ignore")
        except Exception:
            details = ""
        logger.exception("PhonePe HTTP error on %s", path)
        if details:
            raise HTTPException(status_code=502, detail=f"PhonePe error: {details[:220]}") from exc
        raise HTTPException(status_code=502, detail="PhonePe rejected the request.") from exc
    except urllib.error.URLError as exc:
        logger.exception("PhonePe network error on %s", path)
        raise HTTPException(status_code=502, detail="Unable to reach PhonePe right now. Please retry.") from exc
    except TimeoutError as exc:
        logger.exception("PhonePe timeout on %s", path)
        raise HTTPException(status_code=502, detail="PhonePe timed out. Please retry.") from exc
    except ValueError as exc:
        logger.exception("PhonePe returned an unreadable response on %s", path)
        raise HTTPException(status_code=502, detail="PhonePe returned an unexpected response.") from exc


def log_reconcile_event(outcome: ReconcileOutcome) -> None:
    meta = {
        "gateway": outcome.gateway,
        "transaction_id": outcome.transaction_id,
        "status": outcome.status,
        "duplicate": outcome.duplicate,
        "tier": outcome.tier,
    }
    if outcome.applied and not outcome.duplicate:
        database.log_analytics_event("payment", "applied", outcome.user_id, meta)
    elif outcome.status in {"unverified", "rejected", "unknown_order"}:
        database.log_analytics_event("payment", "rejected", outcome.user_id, {**meta, "reason": outcome.reason})


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "CareerDev backend running"}


@app.get("/plans")
def list_plans() -> dict[str, Any]:
    return {"plans": [plan_payload(tier) for tier in TIER_ORDER]}


@app.get("/subscription")
def get_subscription(request: Request, auth_token: str | None = None) -> dict[str, Any]:
    user = require_authenticated_user(request, auth_token)
    return {"subscription": subscription_payload(ledger.get_or_create(user["user_id"]))}


@app.post("/features/{feature}/use")
def use_feature(feature: str, request: Request, auth_token: str | None = None) -> dict[str, Any]:
    user = require_authenticated_user(request, auth_token)
    outcome = record_usage(ledger, user["user_id"], feature)
    if not outcome.allowed:
        raise usage_error(outcome.reservation, user["user_id"])

    database.log_analytics_event("usage", "feature_used", user["user_id"], {"feature": feature})
    return {
        "allowed": True,
        "feature": feature,
        "committed": outcome.committed,
        "subscription": subscription_payload(ledger.get_or_create(user["user_id"])),
    }


@app.post("/quiz/generate")
def generate_quiz(data: QuizGenerateRequest, request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request, data.auth_token)
    topic = safe_text(data.topic)
    if not topic or data.num_questions < 1:
        raise HTTPException(status_code=400, detail="Topic and number of questions are required.")

    feature = QUIZ_30_MIN if data.duration_minutes == 30 else "quiz_generates"

    def generate() -> list[dict[str, Any]]:
        questions, ai_generated, ai_error = ai.generate_quiz_questions(
            topic,
            data.num_questions,
            data.batch,
            data.duration_minutes,
        )
        if not ai_generated:
            raise ai_service_error(ai_error)
        return questions

    outcome = run_gated(ledger, user["user_id"], feature, generate)
    if not outcome.allowed:
        raise usage_error(outcome.reservation, user["user_id"])

    database.log_analytics_event("usage", "feature_used", user["user_id"], {"feature": feature, "topic": topic})
    questions = outcome.result or []
    total_questions = data.total_questions or data.num_questions
    batch = max(1, data.batch)
    return {
        "success": True,
        "topic": topic,
        "batch": batch,
        "questions": questions,
        "questions_in_batch": len(questions),
        "total_questions": total_questions,
        "has_more_batches": batch * ai.QUIZ_BATCH_SIZE < total_questions,
        "duration_minutes": data.duration_minutes,
        "subscription": subscription_payload(ledger.get_or_create(user["user_id"])),
    }


@app.get("/payments/packages")
def payment_packages() -> dict[str, Any]:
    gateways = reconciler.enabled_gateways
    return {
        "payment_enabled": bool(gateways),
        "gateways": gateways,
        "default_gateway": DEFAULT_GATEWAY,
        "plans": [plan_payload(tier) for tier in TIER_ORDER if PLAN_RULES[tier]["price"] > 0],
    }


@app.post("/payments/checkout")
def create_payment_checkout(data: PaymentCheckoutRequest, request: Request) -> dict[str, Any]:
    user = require_authenticated_user(request, data.auth_token)
    gateway = safe_text(data.gateway).lower() or DEFAULT_GATEWAY
    if not gateway or gateway not in reconciler.enabled_gateways:
        raise HTTPException(status_code=503, detail="Payment gateway is not configured yet.")

    tier = normalize_tier(data.plan_id)
    if tier is None or PLAN_RULES[tier]["price"] <= 0:
        raise HTTPException(status_code=400, detail="Invalid subscription plan.")

    current = ledger.get_or_create(user["user_id"])
    if current.tier in PLAN_RULES and tier_rank(tier) < tier_rank(current.tier):
        raise HTTPException(status_code=400, detail="Downgrades are not supported. Choose your current plan or a higher one.")

    email = safe_text(data.email) or user["email"]
    try:
        payment = reconciler.initiate(user["user_id"], tier, gateway, email, safe_text(data.name))
    except InvalidPlanError as exc:
        raise HTTPException(status_code=400, detail="Invalid subscription plan.") from exc
    except GatewayConfigError as exc:
        raise HTTPException(status_code=503, detail="Payment gateway is not configured yet.") from exc

    database.log_analytics_event(
        "payment",
        "checkout_created",
        user["user_id"],
        {"gateway": gateway, "plan_id": tier, "amount": payment.amount, "transaction_id": payment.transaction_id},
    )

    response: dict[str, Any] = {
        "provider": gateway,
        "transaction_id": payment.transaction_id,
        "plan_id": tier,
        "amount": payment.amount,
        "currency": PLAN_RULES[tier]["currency"],
    }
    if gateway == "payu":
        response["payment_url"] = PAYU_BASE_URL
        response["form_data"] = payment.payload
        return response

    try:
        result = phonepe_request(PHONEPE_PAY_ENDPOINT, {"request": payment.payload["request"]}, payment.signature)
    except HTTPException:
        reconciler.mark_failed(payment.transaction_id, "Gateway request failed.")
        raise

    redirect_url = (((result.get("data") or {}).get("instrumentResponse") or {}).get("redirectInfo") or {}).get("url")
    if not result.get("success") or not redirect_url:
        reconciler.mark_failed(payment.transaction_id, safe_text(str(result.get("message") or "")) or "Gateway declined checkout.")
        logger.error("PhonePe declined checkout %s: %s", payment.transaction_id, result.get("code"))
        raise HTTPException(status_code=502, detail="Unable to initialize PhonePe checkout.")
    response["payment_url"] = redirect_url
    return response


@app.api_route("/payments/payu/callback", methods=["GET", "POST"])
async def payu_callback(request: Request) -> RedirectResponse:
    if request.method == "POST":
        form = await request.form()
        raw = {key: str(value) for key, value in form.items()}
    else:
        raw = dict(request.query_params)

    outcome = reconciler.reconcile("payu", raw)
    log_reconcile_event(outcome)
    params = urlencode(
        {
            "status": "success" if outcome.applied else "failure",
            "txnid": outcome.transaction_id,
            "plan": outcome.tier or "",
            "verified": "true" if outcome.verified else "false",
            "platform": PLATFORM_TAG,
            "reason": outcome.reason or "",
        }
    )
    return RedirectResponse(url=f"{FRONTEND_BASE_URL}/payment-callback?{params}", status_code=303)


@app.post("/payments/phonepe/callback")
async def phonepe_callback(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid callback payload.") from exc

    response_b64 = body.get("response") if isinstance(body, dict) else None
    raw = {"response": safe_text(str(response_b64 or "")), "x_verify": request.headers.get("x-verify")}
    outcome = reconciler.reconcile("phonepe", raw)
    log_reconcile_event(outcome)

    if outcome.status == "gateway_disabled":
        raise HTTPException(status_code=503, detail="Payment gateway is not configured.")
    if not outcome.verified:
        raise HTTPException(status_code=400, detail="Invalid callback signature.")
    if outcome.retryable:
        raise HTTPException(status_code=503, detail="Payment recorded but not applied yet. Retry the callback.")
    return {"received": True, "outcome": outcome.to_payload()}


@app.get("/payments/phonepe/status/{transaction_id}")
def phonepe_status(transaction_id: str, request: Request, auth_token: str | None = None) -> dict[str, Any]:
    user = require_authenticated_user(request, auth_token)
    order = order_store.get(transaction_id)
    if order is None or order.user_id != user["user_id"] or order.gateway != "phonepe":
        raise HTTPException(status_code=404, detail="Order not found.")
    try:
        verifier = reconciler.verifier("phonepe")
    except GatewayConfigError as exc:
        raise HTTPException(status_code=503, detail="Payment gateway is not configured yet.") from exc

    result = phonepe_request(
        f"/pg/v1/status/{verifier.merchant_key}/{transaction_id}",
        None,
        verifier.status_signature(transaction_id),
    )
    data = result.get("data") or {}
    return {
        "transaction_id": transaction_id,
        "code": result.get("code"),
        "state": data.get("state"),
        "success": bool(result.get("success")),
        "order": order.to_payload(),
    }


@app.get("/payments/orders/{transaction_id}")
def get_payment_order(transaction_id: str, request: Request, auth_token: str | None = None) -> dict[str, Any]:
    user = require_authenticated_user(request, auth_token)
    order = order_store.get(transaction_id)
    if order is None or order.user_id != user["user_id"]:
        raise HTTPException(status_code=404, detail="Order not found.")
    return {"order": order.to_payload()}
