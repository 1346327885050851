"""
Webhook utilities: idempotent processing and HMAC signature verification.
"""

import hashlib
import hmac
import time

from django.db import IntegrityError, transaction

from apps.core.logging import get_logger
from apps.core.models import ProcessedWebhook

logger = get_logger(__name__)

# Clock skew tolerance in seconds (5 minutes)
CLOCK_SKEW_TOLERANCE = 300

SIGNATURE_VERSION = "v1"


def generate_signature(payload: str, secret: str, timestamp: int | None = None) -> tuple[str, int]:
    """
    Sign ``"<timestamp>.<payload>"`` with HMAC-SHA256.

    Returns:
        Tuple of (signature, timestamp) where signature is "v1=<hex>"
    """
    if timestamp is None:
        timestamp = int(time.time())

    signed_payload = f"{timestamp}.{payload}"
    digest = hmac.new(
        secret.encode("utf-8"),
        signed_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}", timestamp


def verify_signature(
    payload: str,
    secret: str,
    signature: str,
    timestamp: int,
    tolerance: int = CLOCK_SKEW_TOLERANCE,
) -> bool:
    """Verify a signature produced by generate_signature within the clock tolerance."""
    if abs(int(time.time()) - timestamp) > tolerance:
        return False

    expected_signature, _ = generate_signature(payload, secret, timestamp)
    return hmac.compare_digest(expected_signature, signature)


def is_webhook_processed(source: str, event_id: str) -> bool:
    """Check if a webhook event has already been processed."""
    return ProcessedWebhook.objects.filter(source=source, event_id=event_id).exists()


def mark_webhook_processed(source: str, event_id: str) -> bool:
    """
    Mark a webhook event as processed.

    Uses INSERT with a unique constraint to handle concurrent redelivery.

    Returns:
        True if marked successfully, False if already processed
    """
    try:
        with transaction.atomic():
            ProcessedWebhook.objects.create(source=source, event_id=event_id)
        return True
    except IntegrityError:
        logger.debug("webhook_already_processed", source=source, event_id=event_id)
        return False
