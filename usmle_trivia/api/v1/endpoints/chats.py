"""
Chat Endpoints

- POST /chats/one-to-one - Find or create the chat room shared with another user

Message delivery is handled by the hosted realtime channel, not here.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from usmle_trivia.api.deps import (
    backend_http_error,
    get_current_user,
    get_retry_policy,
    get_user_backend,
)
from usmle_trivia.backend.base import AuthUser, QuizBackend
from usmle_trivia.core.retry import RetryError, RetryPolicy
from usmle_trivia.schemas.quiz import ChatRoomResponse, OneToOneChatRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chats"])


@router.post(
    "/one-to-one",
    response_model=ChatRoomResponse,
    summary="Find or create a one-to-one chat",
)
async def find_or_create_one_to_one_chat(
    request: OneToOneChatRequest,
    current_user: AuthUser = Depends(get_current_user),
    backend: QuizBackend = Depends(get_user_backend),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    if request.other_user_id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot start a chat with yourself",
        )
    try:
        chat_id = await retry.execute(
            lambda: backend.find_or_create_one_to_one_chat(
                current_user.id, request.other_user_id
            ),
            operation_name="find_or_create_one_to_one_chat",
        )
    except RetryError as e:
        raise backend_http_error(e)

    logger.info(f"Chat room {chat_id} for {current_user.id} and {request.other_user_id}")
    return ChatRoomResponse(chat_id=chat_id)
