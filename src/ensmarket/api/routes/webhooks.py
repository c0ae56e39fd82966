"""ENS transaction webhook endpoint.

Senders (the wallet relay / chain indexer) post commit and register outcomes here.
Deliveries are at-least-once; the dedupe ledger makes redelivery safe.
"""

import structlog
from fastapi import APIRouter, Depends

from ensmarket.api.dependencies import get_container, validate_webhook_request
from ensmarket.services.container import ServiceContainer
from ensmarket.services.webhooks.payloads import parse_webhook_payload

logger = structlog.get_logger()
router = APIRouter()


@router.post("/ens/tx")
async def receive_ens_tx_webhook(
    raw_body: bytes = Depends(validate_webhook_request),
    container: ServiceContainer = Depends(get_container),
):
    """Process a signed ENS transaction webhook.

    Returns:
        Acknowledgement with the transition result, or a deduplicated marker for
        a delivery that was already handled (or is being handled)

    Raises:
        ServiceError: Rendered as {"code", "message", "details"} by the app handler
    """
    payload = parse_webhook_payload(raw_body)
    logger.info(
        "webhook.received",
        webhook_event=payload.event,
        intent_id=str(payload.data.intent_id),
        tx_hash=payload.data.tx_hash,
    )
    return await container.pipeline.handle(payload)
