from fastapi import APIRouter, Depends, Query

from ..auth import get_current_user
from ..domain import User
from ..gateway import ChatGateway
from ..schemas import OnlineStatusIn, PresenceOut, UpdateProfileIn, UserOut, user_out
from . import get_gateway


router = APIRouter(prefix="/users", tags=["users"])


def _with_presence(gw: ChatGateway, u: User) -> UserOut:
    status = gw.presence.status_of(u.id)
    out = user_out(u)
    out.is_online = status.online
    if status.last_seen is not None:
        out.last_seen = status.last_seen
    return out


@router.get("/search", response_model=list[UserOut])
async def search(
    query: str = Query("", max_length=64),
    limit: int = Query(20, ge=1, le=50),
    user: User = Depends(get_current_user),
    gw: ChatGateway = Depends(get_gateway),
):
    return [_with_presence(gw, u) for u in await gw.users.search(query, exclude=user.id, limit=limit)]


@router.get("/suggested", response_model=list[UserOut])
async def suggested(user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    return [_with_presence(gw, u) for u in await gw.users.suggested(user.id)]


@router.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    return _with_presence(gw, user)


@router.put("/profile", response_model=UserOut)
async def update_profile(payload: UpdateProfileIn, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    u = await gw.users.update_profile(user.id, display_name=payload.full_name, bio=payload.bio, avatar_url=payload.avatar)
    return _with_presence(gw, u)


@router.post("/online-status", response_model=list[PresenceOut])
async def online_status(payload: OnlineStatusIn, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    out = []
    for uid in dict.fromkeys(payload.user_ids):
        s = await gw.presence.lookup(uid)
        out.append(PresenceOut(user_id=uid, online=s.online, last_seen=s.last_seen))
    return out


@router.get("/{user_id}", response_model=UserOut)
async def get_user(user_id: str, user: User = Depends(get_current_user), gw: ChatGateway = Depends(get_gateway)):
    return _with_presence(gw, await gw.users.get(user_id))
