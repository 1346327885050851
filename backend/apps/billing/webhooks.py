"""
Payment gateway webhook handler.

A separate view (not Django Ninja) for raw request handling, needed to
verify the HMAC signature over the exact body bytes.
"""

from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.http import HttpRequest, HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from apps.billing.models import Payment
from apps.billing.payments import handle_payment_event
from apps.core.exceptions import NotFound
from apps.core.logging import get_logger
from apps.core.webhooks import mark_webhook_processed, verify_signature

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
WEBHOOK_SOURCE = "payment"


class PaymentWebhookPayload(BaseModel):
    """Gateway event body. Accepts camelCase keys as sent by the gateway."""

    model_config = ConfigDict(populate_by_name=True)

    subscription_id: int = Field(alias="subscriptionId")
    status: Payment.Status
    amount: Decimal = Field(ge=0)
    reference: str = ""
    method: Payment.Method = Payment.Method.GATEWAY


@csrf_exempt
@require_POST
def payment_webhook(request: HttpRequest) -> HttpResponse:
    """
    Handle payment gateway events.

    Verifies the signature, deduplicates on ``reference`` + ``status`` and
    applies the payment to the subscription.
    """
    if not settings.PAYMENT_WEBHOOK_SECRET:
        logger.error("payment_webhook_secret_not_configured")
        return HttpResponse(status=500)

    signature = request.headers.get(SIGNATURE_HEADER, "")
    raw_timestamp = request.headers.get(TIMESTAMP_HEADER, "")
    if not signature or not raw_timestamp:
        logger.warning("payment_webhook_missing_signature")
        return HttpResponse(status=400)

    try:
        timestamp = int(raw_timestamp)
        body = request.body.decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        logger.warning("payment_webhook_malformed_request")
        return HttpResponse(status=400)

    if not verify_signature(body, settings.PAYMENT_WEBHOOK_SECRET, signature, timestamp):
        logger.warning("payment_webhook_invalid_signature")
        return HttpResponse(status=401)

    try:
        event = PaymentWebhookPayload.model_validate_json(body)
    except ValidationError as e:
        logger.warning("payment_webhook_invalid_payload", errors=e.error_count())
        return HttpResponse(status=400)

    logger.info(
        "payment_webhook_received",
        subscription_id=event.subscription_id,
        status=event.status,
        reference=event.reference,
    )

    # Idempotency marker is rolled back with the handler on failure
    try:
        with transaction.atomic():
            if event.reference and not mark_webhook_processed(
                WEBHOOK_SOURCE, f"{event.reference}:{event.status}"
            ):
                logger.info("payment_webhook_duplicate", reference=event.reference)
                return JsonResponse({"status": "duplicate"})

            outcome = handle_payment_event(
                event.subscription_id,
                event.status,
                event.amount,
                reference=event.reference,
                method=event.method,
            )
    except NotFound as e:
        logger.warning("payment_webhook_unknown_subscription", subscription_id=event.subscription_id)
        return JsonResponse(e.to_dict(), status=e.status_code)
    except Exception:
        logger.exception("payment_webhook_handler_error")
        # 500 so the gateway retries
        return HttpResponse(status=500)

    return JsonResponse(
        {
            "status": "processed",
            "payment_id": outcome.payment.pk,
            "subscription_id": outcome.subscription.pk,
            "subscription_status": outcome.subscription.status,
        }
    )
