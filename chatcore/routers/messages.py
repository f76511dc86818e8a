from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ..auth import get_current_user
from ..blobs import check_upload
from ..domain import User
from ..gateway import ChatGateway
from ..pipeline import MessageDraft
from ..schemas import (
    ForwardIn,
    MessageOut,
    MessagesPageOut,
    ReactionIn,
    SendMessageIn,
    UploadOut,
    message_out,
)
from . import get_gateway


router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/upload/{kind}", response_model=UploadOut)
async def upload_media(kind: str, request: Request, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    body = await request.body()
    ct = request.headers.get("X-Content-Type") or request.headers.get("Content-Type") or None
    fn = request.headers.get("X-Filename") or None
    check_upload(kind, body, ct, gw.settings.MAX_UPLOAD_BYTES)
    blob = await gw.blobs.put(body, ct, fn)
    return UploadOut(url=gw.blobs.url_for(blob.id), blob_id=blob.id, file_name=fn, file_size=blob.size_bytes, content_type=ct)


@router.get("/{conversation_id}", response_model=MessagesPageOut)
async def list_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user: User = Depends(get_current_user),
    gw: ChatGateway = Depends(get_gateway),
):
    limit = min(limit or gw.settings.HISTORY_PAGE_SIZE, gw.settings.HISTORY_MAX_PAGE_SIZE)
    hp = await gw.pipeline.history(conversation_id, user.id, page=page, limit=limit)
    return MessagesPageOut(
        messages=[message_out(m, hp.replies.get(m.reply_to_id) if m.reply_to_id else None) for m in hp.messages],
        page=hp.page,
        has_more=hp.has_more,
    )


@router.post("/{conversation_id}", response_model=MessageOut)
async def send_message(
    conversation_id: str,
    payload: SendMessageIn,
    user: User = Depends(get_current_user),
    gw: ChatGateway = Depends(get_gateway),
):
    draft = MessageDraft(
        content=payload.content,
        message_type=payload.message_type.value,
        media_url=payload.media_url,
        media_thumbnail=payload.media_thumbnail,
        file_name=payload.file_name,
        file_size=payload.file_size,
        duration=payload.duration,
        reply_to=payload.reply_to,
    )
    m = await gw.pipeline.submit(conversation_id, user.id, draft)
    replies = await gw.pipeline.resolve_replies([m])
    return message_out(m, replies.get(m.reply_to_id) if m.reply_to_id else None)


@router.delete("/{message_id}", response_model=MessageOut)
async def delete_message(message_id: str, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    return message_out(await gw.pipeline.delete(message_id, user.id))


@router.post("/{message_id}/reaction", response_model=MessageOut)
async def react(message_id: str, payload: ReactionIn, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    return message_out(await gw.pipeline.react(message_id, user.id, payload.emoji))


@router.delete("/{message_id}/reaction", response_model=MessageOut)
async def unreact(message_id: str, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    return message_out(await gw.pipeline.unreact(message_id, user.id))


@router.post("/{message_id}/forward", response_model=list[MessageOut])
async def forward(message_id: str, payload: ForwardIn, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    return [message_out(m) for m in await gw.pipeline.forward(message_id, user.id, payload.conversation_ids)]


@router.post("/{message_id}/seen", response_model=MessageOut)
async def mark_seen(message_id: str, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    return message_out(await gw.receipts.mark_seen(message_id, user.id))
