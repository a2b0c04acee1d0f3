"""Operator-initiated outbound messages."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from opencraw.api.state import AppState, error_response, get_state
from opencraw.core.errors import ChannelError
from opencraw.core.models import OutboundMessage

router = APIRouter(prefix="/api/v1/os/messages", tags=["messages"])


class SendMessageRequest(BaseModel):
    channel: str = ""
    recipient: str = ""
    message: str = ""
    reply_to_message_id: str | None = None


@router.post("/send", response_model=None)
async def send_message(
    req: SendMessageRequest, state: Annotated[AppState, Depends(get_state)]
) -> dict[str, Any] | JSONResponse:
    """Send text through a registered channel to an explicit recipient."""
    channel_id = req.channel.strip().lower()
    recipient = req.recipient.strip()
    if not channel_id:
        return error_response("channel is required")
    if not recipient:
        return error_response("recipient is required")
    if not req.message.strip():
        return error_response("message is required")
    channel = state.gateway.channels.get(channel_id)
    if channel is None:
        return error_response("unknown channel", status_code=404)
    try:
        await channel.send(
            recipient,
            OutboundMessage(content=req.message, reply_to_message_id=req.reply_to_message_id),
        )
    except ChannelError as e:
        logger.warning("api: send via {} failed: {}", channel_id, e)
        return error_response(str(e), status_code=502)
    return {"status": "ok"}
