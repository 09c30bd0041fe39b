"""
Chat Router: the metered endpoint
=================================

    POST /api/chat   OpenAI-compatible chat completion, proxied upstream

Order of operations: validate → upstream configured → admit (quota
check-and-increment) → upstream call. Usage is charged on attempt; an
upstream failure after admission is not refunded. Anonymous callers are
unmetered unless anonymous access is disabled.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.auth.identity import Identity
from app.auth.session_auth import get_container, get_identity
from app.core.errors import ValidationError
from app.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter()


class ChatMessage(BaseModel):
    role: str = Field(min_length=1, max_length=32)
    content: Union[str, List[Dict[str, Any]]]

    model_config = {"extra": "allow"}


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(min_length=1)
    model: Optional[str] = Field(default=None, max_length=128)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    stream: bool = False


@router.post(
    "/chat",
    summary="Metered chat completion",
    description="Counts one question against the caller's monthly quota, then forwards "
    "the request to the upstream model.",
)
async def chat(
    body: ChatRequest,
    identity: Identity = Depends(get_identity),
    container: ServiceContainer = Depends(get_container),
):
    if body.stream:
        raise ValidationError("streaming responses are not supported")

    # Nothing is charged for a request that could never reach the upstream
    container.chat_proxy.ensure_configured()
    snapshot = await container.meter.admit(identity)
    headers = {}
    if snapshot is not None:
        headers = {
            "X-Usage-Questions-Used": str(snapshot.questions_used),
            "X-Usage-Questions-Limit": str(snapshot.questions_limit),
        }

    upstream = await container.chat_proxy.complete(body.model_dump(exclude_none=True, exclude={"stream"}))
    if not upstream.ok:
        return JSONResponse(
            status_code=upstream.status_code,
            content={
                "error": {
                    "code": "UPSTREAM_ERROR",
                    "message": upstream.error_message,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            },
            headers=headers,
        )
    return JSONResponse(content=upstream.payload, headers=headers)
