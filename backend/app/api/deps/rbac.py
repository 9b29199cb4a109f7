from __future__ import annotations

from collections.abc import Iterable

from fastapi import Depends, HTTPException, status

from app.api.deps.auth import CurrentUser, UserRole, get_current_user

OPERATOR_ROLES = {UserRole.operator, UserRole.admin}


def enforce_roles(
    user: CurrentUser,
    allowed: Iterable[UserRole],
    *,
    message: str = "Not authorized for this action",
) -> None:
    if user.role not in set(allowed):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=message)


def require_roles(*allowed: UserRole):
    async def _dependency(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        enforce_roles(current_user, allowed)
        return current_user

    return _dependency


require_operator = require_roles(*OPERATOR_ROLES)
