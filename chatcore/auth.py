import datetime as dt
from dataclasses import dataclass, field
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings
from .domain import User
from .errors import NotFoundError, Unauthenticated, ValidationError
from .users import UserDirectory


bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class Identity:
    user_id: str
    claims: dict = field(default_factory=dict)


class JwtTokenVerifier:
    """HS256 bearer tokens. The first key signs; every key verifies, so secrets can rotate."""

    def __init__(self, keys: list[str], *, expires: Optional[dt.timedelta] = None) -> None:
        if not keys:
            raise ValueError("at least one signing key is required")
        self.keys = list(keys)
        self.expires = expires or settings.jwt_expires_delta

    def create_access_token(self, user_id: str, **claims) -> str:
        now = dt.datetime.now(dt.timezone.utc)
        payload = {
            "sub": user_id,
            "iat": int(now.timestamp()),
            "exp": int((now + self.expires).timestamp()),
        }
        payload.update(claims)
        return jwt.encode(payload, self.keys[0], algorithm="HS256")

    def verify(self, token: str) -> Identity:
        if not token:
            raise Unauthenticated("Missing token")
        payload = None
        last_err: Optional[Exception] = None
        for key in self.keys:
            try:
                payload = jwt.decode(token, key, algorithms=["HS256"])
                break
            except jwt.ExpiredSignatureError:
                raise Unauthenticated("Token expired")
            except jwt.InvalidTokenError as e:
                last_err = e
        if payload is None:
            raise Unauthenticated("Invalid token") from last_err
        user_id = payload.get("sub")
        if not user_id:
            raise Unauthenticated("Token has no subject")
        return Identity(user_id=str(user_id), claims=payload)


def create_access_token(user_id: str, **claims) -> str:
    return JwtTokenVerifier(settings.jwt_signing_keys).create_access_token(user_id, **claims)


def get_identity(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    if creds is None or not creds.credentials:
        raise Unauthenticated("Missing bearer token")
    identity = request.app.state.gateway.verifier.verify(creds.credentials)
    request.state.user_id = identity.user_id
    return identity


async def get_current_user(request: Request, identity: Identity = Depends(get_identity)) -> User:
    directory: UserDirectory = request.app.state.gateway.users
    try:
        return await directory.ensure(identity.user_id, identity.claims)
    except (NotFoundError, ValidationError) as e:
        raise Unauthenticated("Unknown user") from e
