"""
Session Recovery Routes for the Loan Lead Pipeline.

Return-link redemption and the returning visitor's chat.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from lead_pipeline.errors import VisitorNotFound
from lead_pipeline.session_recovery import WELCOME_BACK_REPLY
from lead_pipeline.stores import TokenRejection
from ..services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()

LINK_INVALID = "This link is no longer valid. Please request a new one."

# Expired and used links read the same to the visitor.
REJECTION_STATUS = {
    TokenRejection.NOT_FOUND: 404,
    TokenRejection.EXPIRED: 410,
    TokenRejection.ALREADY_USED: 410,
}


class ChatRequest(BaseModel):
    visitor_id: str
    message: str = Field(..., min_length=1, max_length=2000)


class ChatResponse(BaseModel):
    reply: str
    credit_check_requested: bool = False


class ReturnResponse(BaseModel):
    visitor_id: str
    abandonment_step: int
    reply: str
    phone_on_file: Optional[bool] = None


@router.get("/return/{token}", response_model=ReturnResponse)
async def redeem_return_link(token: str, services: Services = Depends(get_services)):
    """Redeem a single-use return token and resume the visitor's session."""
    result = await services.pipeline.recovery.redeem(token)
    if not result.ok:
        raise HTTPException(status_code=REJECTION_STATUS[result.rejection], detail=LINK_INVALID)

    visitor = result.visitor
    return ReturnResponse(
        visitor_id=visitor.id,
        abandonment_step=visitor.abandonment_step,
        reply=WELCOME_BACK_REPLY,
        phone_on_file=visitor.phone_number is not None,
    )


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, services: Services = Depends(get_services)):
    """
    Handle a chat message from a returning visitor.

    A phone number in the message starts the credit check.
    """
    try:
        turn = await services.pipeline.recovery.handle_message(request.visitor_id, request.message)
    except VisitorNotFound:
        raise HTTPException(status_code=404, detail="Session not found. Please use your return link again.")

    return ChatResponse(reply=turn.reply, credit_check_requested=turn.credit_check_requested)
