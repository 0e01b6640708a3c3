"""Webhook receivers for repository pushes and hosting deployments.

- ``POST /api/webhooks/github``: push events mark the session building and
  schedule a deployment check
- ``POST /api/webhooks/vercel``: deployment events update the session and may
  start an evaluation

When a secret is configured the raw body is verified against the sender's
HMAC signature header before anything is parsed. ``GET`` on either path
reports whether the endpoint is active and how many deliveries it accepted.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from api.routes import get_session_manager
from config import settings
from deployment.tracker import WebhookOutcome
from errors import ValidationError
from models.schemas import WebhookActivityResponse, WebhookResponse

logger = structlog.get_logger(__name__)

webhook_router = APIRouter(prefix="/api/webhooks")


@dataclass
class _Activity:
    received: int = 0
    last_received_at: float | None = None

    def record(self) -> None:
        self.received += 1
        self.last_received_at = time.time()


_activity: dict[str, _Activity] = {"github": _Activity(), "vercel": _Activity()}


def reset_webhook_activity() -> None:
    """Zero the delivery counters (used by tests)."""
    for source in _activity:
        _activity[source] = _Activity()


def verify_signature(body: bytes, signature: str, secret: str, algorithm: str) -> bool:
    """Constant-time check of ``signature`` against the HMAC of ``body``.

    GitHub sends ``sha256=<hex>``; Vercel sends the bare hex digest.
    """
    if not signature:
        return False
    digest = hmac.new(secret.encode(), body, algorithm).hexdigest()
    received = signature.split("=", 1)[1] if "=" in signature else signature
    return hmac.compare_digest(digest, received.strip().lower())


def _parse_body(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError as e:
        raise ValidationError(f"Webhook body is not valid JSON: {e.msg}") from e
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return payload


def _invalid_signature(source: str) -> JSONResponse:
    logger.warning("webhook_signature_invalid", source=source)
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": "Invalid signature"},
    )


def _to_response(outcome: WebhookOutcome) -> WebhookResponse:
    return WebhookResponse(
        message=outcome.message,
        session_id=outcome.session_id,
        status=outcome.status,
        evaluation_scheduled=outcome.evaluation_scheduled,
    )


# =============================================================================
# GitHub
# =============================================================================


@webhook_router.post("/github", response_model=WebhookResponse, summary="GitHub push webhook")
async def github_webhook(request: Request) -> WebhookResponse | JSONResponse:
    body = await request.body()
    secret = settings.github_webhook_secret
    if secret and not verify_signature(
        body, request.headers.get("x-hub-signature-256", ""), secret, "sha256"
    ):
        return _invalid_signature("github")

    event = request.headers.get("x-github-event", "")
    if event != "push":
        logger.debug("github_webhook_ignored", event=event)
        return WebhookResponse(message="Event ignored")

    payload = _parse_body(body)
    full_name = str((payload.get("repository") or {}).get("full_name") or "")
    _activity["github"].record()

    outcome = await get_session_manager().tracker.ingest_repository_push(full_name)
    logger.info(
        "github_webhook_received",
        repo=full_name,
        session_id=outcome.session_id,
        message=outcome.message,
    )
    return _to_response(outcome)


@webhook_router.get(
    "/github", response_model=WebhookActivityResponse, summary="GitHub webhook status"
)
async def github_webhook_status() -> WebhookActivityResponse:
    return _activity_response("github", ["push"], bool(settings.github_webhook_secret))


# =============================================================================
# Vercel
# =============================================================================


@webhook_router.post(
    "/vercel", response_model=WebhookResponse, summary="Vercel deployment webhook"
)
async def vercel_webhook(request: Request) -> WebhookResponse | JSONResponse:
    body = await request.body()
    secret = settings.vercel_webhook_secret
    if secret and not verify_signature(
        body, request.headers.get("x-vercel-signature", ""), secret, "sha1"
    ):
        return _invalid_signature("vercel")

    payload = _parse_body(body)
    _activity["vercel"].record()

    outcome = await get_session_manager().tracker.ingest_hosting_webhook(payload)
    logger.info(
        "vercel_webhook_received",
        event=request.headers.get("x-vercel-event") or payload.get("type"),
        session_id=outcome.session_id,
        status=outcome.status.value if outcome.status else None,
        evaluation_scheduled=outcome.evaluation_scheduled,
    )
    return _to_response(outcome)


@webhook_router.get(
    "/vercel", response_model=WebhookActivityResponse, summary="Vercel webhook status"
)
async def vercel_webhook_status() -> WebhookActivityResponse:
    return _activity_response("vercel", ["deployment"], bool(settings.vercel_webhook_secret))


def _activity_response(
    source: str, events: list[str], signature_required: bool
) -> WebhookActivityResponse:
    activity = _activity[source]
    return WebhookActivityResponse(
        message=f"{source.capitalize()} webhook endpoint is active",
        source=source,  # type: ignore[arg-type]
        events=events,
        received=activity.received,
        last_received_at=activity.last_received_at,
        signature_required=signature_required,
    )
