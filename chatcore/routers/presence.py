from fastapi import APIRouter, Depends

from ..auth import get_current_user
from ..domain import User
from ..gateway import ChatGateway
from ..schemas import PresenceOut
from . import get_gateway


router = APIRouter(prefix="/presence", tags=["presence"])


@router.get("/{user_id}", response_model=PresenceOut)
async def get_presence(user_id: str, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    s = await gw.presence.lookup(user_id)
    return PresenceOut(user_id=user_id, online=s.online, last_seen=s.last_seen)
