from typing import Optional
import logging

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from . import config
from .errors import Unauthenticated, Unauthorized
from .models import UserRole

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class AuthContext(BaseModel):
    user_id: str
    role: str = UserRole.USER.value


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired.")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token.")


def create_token(user_id: str, role: str = UserRole.USER.value) -> str:
    """Issues a session token in the shape the auth provider does; used by tooling and tests."""
    return jwt.encode({"sub": user_id, "role": role}, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[AuthContext]:
    """FastAPI dependency. Anonymous requests get None; operations decide whether that is allowed."""
    if credentials is None:
        return None
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise Unauthenticated("Invalid token.")
    return AuthContext(user_id=user_id, role=payload.get("role", UserRole.USER.value))


def require_user(auth: Optional[AuthContext]) -> AuthContext:
    if auth is None:
        raise Unauthenticated()
    return auth


def require_seller(auth: Optional[AuthContext]) -> AuthContext:
    auth = require_user(auth)
    if auth.role != UserRole.SELLER.value:
        logger.warning(f"User {auth.user_id} with role {auth.role} attempted a seller operation")
        raise Unauthorized("Unauthorized Access: Seller Privileges Required for Entry.")
    return auth
