from fastapi import APIRouter, Depends, Response

from ..auth import get_current_user
from ..domain import User
from ..gateway import ChatGateway
from . import get_gateway


router = APIRouter(prefix="/blobs", tags=["blobs"])


@router.get("/{blob_id}")
async def download_blob(blob_id: str, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    b = await gw.blobs.get(blob_id)
    return Response(
        content=b.data,
        media_type=b.content_type or "application/octet-stream",
        headers={"Content-Disposition": f"attachment; filename=\"{b.filename or 'file.bin'}\""},
    )
