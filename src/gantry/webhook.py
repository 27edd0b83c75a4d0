"""Webhook receiver: FastAPI endpoint that turns GitHub deliveries into Events.

Verifies HMAC-SHA256 signatures and rate limits before enqueuing events for
the engine. Responds immediately; runs execute in the background.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import TYPE_CHECKING

from fastapi import APIRouter, Header, Request, Response

from gantry.models import Event

if TYPE_CHECKING:
    import asyncio

logger = logging.getLogger(__name__)

router = APIRouter()

# These are set during server startup (see server.py)
_event_queue: asyncio.Queue[Event] | None = None
_webhook_secret: str | None = None

# Rate limiting state
_rate_limit_max: int = 30  # max webhook deliveries per window
_rate_limit_window: float = 60.0  # window in seconds
_rate_limit_timestamps: list[float] = []


def configure(
    event_queue: asyncio.Queue[Event],
    *,
    webhook_secret: str | None = None,
    rate_limit_max: int = 30,
    rate_limit_window: float = 60.0,
) -> None:
    """Wire the webhook endpoint to the event queue.

    Args:
        event_queue: Queue the engine consumes.
        webhook_secret: Shared secret for signature checks (None = unchecked).
        rate_limit_max: Max webhook deliveries per window (0 = unlimited).
        rate_limit_window: Window length in seconds.
    """
    global _event_queue, _webhook_secret
    global _rate_limit_max, _rate_limit_window, _rate_limit_timestamps
    _event_queue = event_queue
    _webhook_secret = webhook_secret
    _rate_limit_max = rate_limit_max
    _rate_limit_window = rate_limit_window
    _rate_limit_timestamps = []


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the body."""
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def _check_rate_limit() -> bool:
    """Return True if the request is within rate limits."""
    global _rate_limit_timestamps
    if _rate_limit_max <= 0:
        return True

    now = time.monotonic()
    cutoff = now - _rate_limit_window
    _rate_limit_timestamps = [t for t in _rate_limit_timestamps if t > cutoff]

    if len(_rate_limit_timestamps) >= _rate_limit_max:
        return False

    _rate_limit_timestamps.append(now)
    return True


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    x_github_event: str = Header(...),
    x_github_delivery: str = Header(...),
    x_hub_signature_256: str = Header(default=""),
) -> Response:
    """Receive and enqueue a GitHub webhook event.

    Checks (in order):
    1. Rate limit
    2. HMAC-SHA256 signature verification
    3. Parse + enqueue for async processing
    """
    if not _check_rate_limit():
        logger.warning("Webhook rate limit exceeded (delivery=%s)", x_github_delivery)
        return Response(status_code=429, content="Rate limit exceeded")

    body = await request.body()

    if _webhook_secret is not None and not verify_signature(
        _webhook_secret, body, x_hub_signature_256
    ):
        logger.warning("Invalid webhook signature for delivery %s", x_github_delivery)
        return Response(status_code=401, content="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Malformed webhook body for delivery %s", x_github_delivery)
        return Response(status_code=400, content="Malformed payload")
    if not isinstance(payload, dict):
        return Response(status_code=400, content="Malformed payload")

    event = Event.from_github(x_github_event, payload, delivery_id=x_github_delivery)
    logger.info(
        "Webhook received: %s (delivery=%s, actor=%s)",
        event.full_type,
        x_github_delivery,
        event.payload.get("actor"),
    )

    if _event_queue is not None:
        await _event_queue.put(event)
    else:
        logger.error("Event queue not configured; dropping event %s", x_github_delivery)

    return Response(status_code=200, content="ok")
