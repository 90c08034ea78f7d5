"""Caller identity supplied by the API gateway.

Authentication happens upstream; requests reach this service with the
authenticated user in ``X-User-Id`` and their role in ``X-User-Role``.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


async def get_caller_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CallerIdentity:
    """Extract the caller from gateway headers.

    Raises:
        HTTPException: 401 if no user is present
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    return CallerIdentity(user_id=x_user_id, role=(x_user_role or "user").lower())


async def require_admin(
    caller: CallerIdentity = Depends(get_caller_identity),
) -> CallerIdentity:
    """Allow only callers with the admin role."""
    if not caller.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return caller
