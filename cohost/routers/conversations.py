"""Human operator endpoints: inspect and close escalated conversations."""

from fastapi import APIRouter, Depends, HTTPException

from cohost.dependencies import get_engine
from cohost.logging_config import get_logger
from cohost.schemas.conversation import ConversationStateResponse, ResolveRequest, ResolveResponse
from cohost.services.orchestrator_service import Engine

logger = get_logger("conversations")

router = APIRouter(prefix="/conversations")


@router.get("/{conversation_id}", response_model=ConversationStateResponse)
async def get_conversation(conversation_id: str, engine: Engine = Depends(get_engine)) -> ConversationStateResponse:
    snapshot = engine.state.snapshot(conversation_id)
    return ConversationStateResponse(
        conversation_id=conversation_id,
        state=snapshot.state.value,
        pending=snapshot.pending,
        escalation_reasons=sorted(snapshot.escalation_reasons),
        updated_at=snapshot.updated_at,
    )


@router.post("/{conversation_id}/resolve", response_model=ResolveResponse)
async def resolve_conversation(
    conversation_id: str,
    data: ResolveRequest,
    engine: Engine = Depends(get_engine),
) -> ResolveResponse:
    """Operator hands the conversation back: escalated -> resolved."""
    old_state = engine.state.snapshot(conversation_id).state
    result = await engine.state.resolve(conversation_id)
    if not result.ok:
        raise HTTPException(status_code=409, detail={"code": result.error_code, "message": result.error})

    logger.info(
        "Conversation resolved",
        extra={
            "context": {
                "conversation_id": conversation_id,
                "operator_id": data.operator_id,
                "operator_name": data.operator_name,
                "note": data.note,
            }
        },
    )
    return ResolveResponse(
        success=True,
        conversation_id=conversation_id,
        old_state=old_state.value,
        new_state=result.value.value,
        message="Conversation resolved",
    )
