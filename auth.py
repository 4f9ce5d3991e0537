"""
Request identity

An upstream auth layer verifies the caller and forwards the result as
X-User-Id / X-User-Role headers. Those values are trusted as-is here.
"""
from typing import Optional, get_args

from fastapi import Header
from pydantic import BaseModel

from errors import Forbidden, Unauthorized
from schemas import Role


class Identity(BaseModel):
    user_id: str
    role: Role


def current_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Identity:
    if not x_user_id or not x_user_role:
        raise Unauthorized("Authentication required")
    if x_user_role not in get_args(Role):
        raise Unauthorized("Unknown role")
    return Identity(user_id=x_user_id, role=x_user_role)


def require_roles(*roles: str):
    def dependency(x_user_id: Optional[str] = Header(None), x_user_role: Optional[str] = Header(None)) -> Identity:
        identity = current_identity(x_user_id, x_user_role)
        if identity.role not in roles:
            raise Forbidden("Access denied")
        return identity
    return dependency
