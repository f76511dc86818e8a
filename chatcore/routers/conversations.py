from fastapi import APIRouter, Depends

from ..auth import get_current_user
from ..domain import Conversation, User
from ..gateway import ChatGateway
from ..schemas import ConversationOut, ConversationsOut, CreateGroupIn, UpdateConversationIn, conversation_out
from . import get_gateway


router = APIRouter(prefix="/conversations", tags=["conversations"])


async def render(gw: ChatGateway, c: Conversation, viewer_id: str) -> ConversationOut:
    peer = None
    if not c.is_group:
        others = c.others(viewer_id)
        if others:
            peer = await gw.users.find(others[0])
            if peer is not None:
                status = gw.presence.status_of(peer.id)
                peer.is_online = status.online
                peer.last_seen = status.last_seen or peer.last_seen
    last = await gw.store.get_message(c.last_message_id) if c.last_message_id else None
    return conversation_out(c, viewer_id, peer=peer, last_message=last)


@router.get("", response_model=ConversationsOut)
async def list_conversations(user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    items = await gw.conversations.list_for_user(user.id)
    return ConversationsOut(conversations=[await render(gw, c, user.id) for c in items])


@router.get("/user/{user_id}", response_model=ConversationOut)
async def get_or_create_direct(user_id: str, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    c = await gw.conversations.get_or_create_direct(user.id, user_id)
    return await render(gw, c, user.id)


@router.post("/group", response_model=ConversationOut)
async def create_group(payload: CreateGroupIn, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    c = await gw.conversations.create_group(user.id, payload.name, payload.participants, payload.avatar)
    return await render(gw, c, user.id)


@router.put("/{conversation_id}", response_model=ConversationOut)
async def update_conversation(
    conversation_id: str,
    payload: UpdateConversationIn,
    user: User = Depends(get_current_user),
    gw: ChatGateway = Depends(get_gateway),
):
    c = await gw.conversations.update_settings(
        conversation_id, user.id, theme=payload.theme, emoji=payload.emoji, is_muted=payload.is_muted, name=payload.name
    )
    return await render(gw, c, user.id)


@router.post("/{conversation_id}/read", response_model=ConversationOut)
async def mark_read(conversation_id: str, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    c = await gw.conversations.mark_read(conversation_id, user.id)
    return await render(gw, c, user.id)


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    hard: bool = False,
    user: User = Depends(get_current_user),
    gw: ChatGateway = Depends(get_gateway),
):
    removed = await gw.conversations.delete(conversation_id, user.id, hard=hard)
    return {"detail": "ok", "messagesRemoved": removed}
