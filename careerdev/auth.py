from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import HTTPException, Request

from careerdev.config import AUTH_TOKEN_SECRET, AUTH_TOKEN_TTL_HOURS
from careerdev.utils import b64url_decode, b64url_encode, safe_text


def normalize_email(value: str) -> str:
    return safe_text(value).lower()


def sign_token_payload(payload_b64: str) -> bytes:
    return hmac.new(AUTH_TOKEN_SECRET.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()


def create_auth_token(user_id: str, email: str) -> str:
    payload = {
        "uid": str(user_id),
        "email": normalize_email(email),
        "exp": int(time.time()) + max(1, AUTH_TOKEN_TTL_HOURS) * 3600,
    }
    payload_b64 = b64url_encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{payload_b64}.{b64url_encode(sign_token_payload(payload_b64))}"


def decode_auth_token(token: str) -> dict[str, Any]:
    parts = token.split(".")
    if len(parts) != 2:
        raise HTTPException(status_code=401, detail="Invalid authentication token.")

    payload_b64, signature_b64 = parts
    try:
        provided = b64url_decode(signature_b64)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token signature.") from exc

    if not hmac.compare_digest(sign_token_payload(payload_b64), provided):
        raise HTTPException(status_code=401, detail="Invalid authentication token signature.")

    try:
        payload = json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token payload.") from exc

    if not isinstance(payload, dict) or int(payload.get("exp", 0)) < int(time.time()):
        raise HTTPException(status_code=401, detail="Authentication token expired. Please log in again.")

    return payload


def extract_bearer_token(request: Request) -> str | None:
    auth_header = safe_text(request.headers.get("authorization"))
    if auth_header.lower().startswith("bearer "):
        return safe_text(auth_header[7:])
    return None


def require_authenticated_user(request: Request, explicit_auth_token: str | None = None) -> dict[str, str]:
    """Return ``{"user_id", "email"}`` for the caller or raise 401."""
    token = safe_text(explicit_auth_token) or safe_text(extract_bearer_token(request))
    if not token:
        raise HTTPException(status_code=401, detail="Login required. Please sign in to continue.")

    payload = decode_auth_token(token)
    user_id = safe_text(str(payload.get("uid") or ""))
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication token.")
    return {"user_id": user_id, "email": normalize_email(str(payload.get("email") or ""))}
