"""
Chat API routes - Support conversations between accounts and admins.

Users, guests, resellers and clients each get one conversation; admins pick
the conversation with `with_username` / `to_username`.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from license_portal.api.dependencies import http_error, require_admin, require_chat
from license_portal.db.session import get_read_db, get_write_db
from license_portal.exceptions import PortalError
from license_portal.models.api import (
    ChatMessageResponse,
    ChatSendRequest,
    ChatStatsResponse,
    ClientResponse,
    CountResponse,
)
from license_portal.models.domain import Principal
from license_portal.services.chat import ChatService

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("/send", response_model=ChatMessageResponse)
async def send_message(
    body: ChatSendRequest,
    principal: Principal = Depends(require_chat),
    db: AsyncSession = Depends(get_write_db),
) -> ChatMessageResponse:
    try:
        message = await ChatService(db).send(principal, body.message, body.to_username)
    except PortalError as exc:
        raise http_error(exc, "chat_send") from exc
    return ChatMessageResponse.from_record(message)


@router.get("/history", response_model=list[ChatMessageResponse])
async def history(
    with_username: str | None = Query(None, max_length=80),
    principal: Principal = Depends(require_chat),
    db: AsyncSession = Depends(get_read_db),
) -> list[ChatMessageResponse]:
    try:
        messages = await ChatService(db).history(principal, with_username)
    except PortalError as exc:
        raise http_error(exc, "chat_history") from exc
    return [ChatMessageResponse.from_record(m) for m in messages]


@router.post("/read", response_model=CountResponse)
async def mark_read(
    with_username: str | None = Query(None, max_length=80),
    principal: Principal = Depends(require_chat),
    db: AsyncSession = Depends(get_write_db),
) -> CountResponse:
    try:
        count = await ChatService(db).mark_read(principal, with_username)
    except PortalError as exc:
        raise http_error(exc, "chat_mark_read") from exc
    return CountResponse(message="Messages marked as read", count=count)


# ============================================================================
# Admin
# ============================================================================


@router.get("/clients", response_model=list[ClientResponse])
async def chat_clients(
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> list[ClientResponse]:
    clients = await ChatService(db).chat_clients()
    return [ClientResponse.from_client(c) for c in clients]


@router.get("/stats", response_model=ChatStatsResponse)
async def chat_stats(
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> ChatStatsResponse:
    stats = await ChatService(db).stats()
    return ChatStatsResponse(
        total_messages=stats.total_messages,
        unread_messages=stats.unread_messages,
        conversations=stats.conversations,
    )


@router.delete("/conversations/{username}", response_model=CountResponse)
async def delete_conversation(
    username: str,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CountResponse:
    count = await ChatService(db).delete_conversation(principal, username)
    return CountResponse(message=f"Deleted {count} messages", count=count)


@router.delete("/all", response_model=CountResponse)
async def delete_all(
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CountResponse:
    count = await ChatService(db).delete_all(principal)
    return CountResponse(message=f"Deleted {count} messages", count=count)


@router.post("/prune", response_model=CountResponse)
async def prune(
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CountResponse:
    count = await ChatService(db).prune()
    return CountResponse(message=f"Pruned {count} messages", count=count)
