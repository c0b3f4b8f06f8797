from fastapi import APIRouter, Depends, HTTPException, status

from cohost.dependencies import get_engine
from cohost.logging_config import get_logger
from cohost.schemas.webhook import InboundWebhook, WebhookResponse
from cohost.services.errors import NormalizationError, PropertyBusy
from cohost.services.orchestrator_service import Engine

logger = get_logger("webhook")

router = APIRouter()


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(envelope: InboundWebhook, engine: Engine = Depends(get_engine)) -> WebhookResponse:
    """Inbound platform event: guest message or booking update."""
    logger.info(
        "Webhook received",
        extra={
            "context": {
                "platform": envelope.platform,
                "event_type": envelope.event_type.value,
                "platform_event_id": envelope.platform_event_id,
            }
        },
    )
    try:
        outcome = await engine.orchestrator.handle_webhook(envelope)
    except NormalizationError as exc:
        logger.warning(
            "Webhook rejected",
            extra={"context": {"code": exc.code, "platform_event_id": envelope.platform_event_id}},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": exc.code, "message": exc.message},
        )
    except PropertyBusy as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"code": exc.code, "message": exc.message},
        )

    return WebhookResponse(
        success=outcome.status != "failed",
        status=outcome.status,
        conversation_id=outcome.conversation_id,
        state=outcome.state.value if outcome.state else None,
        message=outcome.message,
    )
