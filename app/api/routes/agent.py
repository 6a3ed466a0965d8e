"""
Agent API - manual trigger of the decision path for one conversation.
"""
from dataclasses import asdict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.exceptions import ConversationLockedError, ConversationNotFoundError
from app.core.logging import bind_conversation, get_logger
from app.db.database import get_db
from app.domain.services.claim_service import ClaimService, load_conversation
from app.domain.services.lead_agent_service import LeadAgent
from app.state_machine.states import LeadState

logger = get_logger(__name__)

router = APIRouter()


class AgentTriggerRequest(BaseModel):
    """
    system_instruction longer than 5 characters is a manual command: it
    overrides the status lock, the human-interruption guard, wait_until and
    the already-processed check. direct_message is sent verbatim, no oracle.
    """
    conversation_id: int
    system_instruction: str | None = None
    direct_message: str | None = Field(default=None, max_length=1600)
    next_state: LeadState | None = None

    @field_validator("system_instruction", "direct_message")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip()


class AgentTriggerResponse(BaseModel):
    conversation_id: int
    source: str
    action: str
    guard: str | None = None
    reason: str | None = None
    response: str | None = None
    sent: bool = False
    state_before: str | None = None
    state_after: str | None = None


async def get_lead_agent(db: AsyncSession = Depends(get_db)) -> LeadAgent:
    return LeadAgent(db)


@router.post(
    "/trigger",
    response_model=AgentTriggerResponse,
    summary="Manual decision trigger",
    responses={
        404: {"description": "Conversation not found"},
        409: {"description": "Conversation is being processed by another worker"},
    },
)
async def trigger_agent(
    payload: AgentTriggerRequest,
    db: AsyncSession = Depends(get_db),
    agent: LeadAgent = Depends(get_lead_agent),
    _: None = Depends(require_admin_api_key),
) -> AgentTriggerResponse:
    conversation_id = payload.conversation_id
    if await load_conversation(db, conversation_id) is None:
        raise ConversationNotFoundError(conversation_id)

    claims = ClaimService(db)
    with bind_conversation(conversation_id):
        async with claims.claimed(conversation_id) as is_claimed:
            if not is_claimed:
                raise ConversationLockedError(conversation_id)

            conversation = await load_conversation(db, conversation_id)
            logger.info(
                "Manual trigger",
                extra_data={
                    "conversation_id": conversation_id,
                    "has_instruction": payload.system_instruction is not None,
                    "has_direct_message": payload.direct_message is not None,
                    "next_state": payload.next_state.value if payload.next_state else None,
                },
            )
            result = await agent.run_manual(
                conversation,
                instruction=payload.system_instruction,
                direct_message=payload.direct_message,
                next_state=payload.next_state,
            )

    return AgentTriggerResponse(**asdict(result))
