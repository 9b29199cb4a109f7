"""Caller identity supplied by the upstream gateway."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from fastapi import Header, HTTPException, status


class UserRole(str, enum.Enum):
    member = "member"
    operator = "operator"
    admin = "admin"


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: UserRole


async def get_current_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> CurrentUser:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    try:
        role = UserRole((x_user_role or UserRole.member.value).strip().lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown role")
    return CurrentUser(id=user_id, role=role)
