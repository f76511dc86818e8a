from __future__ import annotations

import json
import logging
from typing import Optional

from .domain import BIO_MAX_LEN, HANDLE_RE, User
from .errors import NotFoundError, ValidationError
from .store import GuardedStore


logger = logging.getLogger("chat.users")


def validate_handle(handle: str) -> str:
    handle = (handle or "").strip()
    if not HANDLE_RE.match(handle):
        raise ValidationError("Handle must be 3-15 characters of letters, digits or underscore")
    return handle


class UserDirectory:
    """Read-through cache of identity records owned by the identity provider."""

    def __init__(self, store: GuardedStore) -> None:
        self.store = store

    async def get(self, user_id: str) -> User:
        u = await self.store.get_user(user_id)
        if u is None:
            raise NotFoundError("User not found")
        return u

    async def find(self, user_id: str) -> Optional[User]:
        return await self.store.get_user(user_id)

    async def ensure(self, user_id: str, claims: Optional[dict] = None) -> User:
        """Return the cached record, creating it on first sight from token claims."""
        u = await self.store.get_user(user_id)
        if u is not None:
            return u
        claims = claims or {}
        handle = claims.get("handle") or claims.get("username")
        if not handle:
            raise NotFoundError("User not found")
        u = User(
            id=user_id,
            handle=validate_handle(handle),
            display_name=str(claims.get("name") or handle)[:128],
            avatar_url=str(claims.get("avatar") or ""),
        )
        u = await self.store.put_user(u)
        logger.info(json.dumps({"event": "user_cached", "user_id": user_id}))
        return u

    async def update_profile(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        fields = {}
        if display_name is not None:
            name = display_name.strip()
            if not name:
                raise ValidationError("Display name cannot be empty")
            fields["display_name"] = name[:128]
        if bio is not None:
            if len(bio) > BIO_MAX_LEN:
                raise ValidationError(f"Bio must be at most {BIO_MAX_LEN} characters")
            fields["bio"] = bio
        if avatar_url is not None:
            fields["avatar_url"] = avatar_url
        await self.get(user_id)
        if not fields:
            return await self.get(user_id)
        return await self.store.patch_user(user_id, **fields)

    async def search(self, query: str, *, exclude: Optional[str] = None, limit: int = 20) -> list[User]:
        query = (query or "").strip()
        if not query:
            return []
        rows = await self.store.search_users(query, limit=limit + 1)
        return [u for u in rows if u.id != exclude][:limit]

    async def suggested(self, user_id: str, *, limit: int = 10) -> list[User]:
        known = {user_id}
        for convo in await self.store.conversations_for_user(user_id):
            known.update(convo.participant_ids)
        rows = await self.store.list_users(limit=limit + len(known))
        return [u for u in rows if u.id not in known][:limit]
