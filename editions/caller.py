"""Caller identity handed over by the auth layer."""
from typing import Iterable, Optional
from enum import Enum
from pydantic import BaseModel, Field, field_validator

from .conf import EDITIONS_ADMIN_GROUPS, EDITIONS_OWNER_GROUPS


class UserRole(str, Enum):
    """Roles known by the edition engine."""
    ADMIN = 'admin'
    OWNER = 'owner'
    USER = 'user'


class Caller(BaseModel):
    """Authenticated user performing an engine operation."""

    user_id: str = Field(..., description="Account reference of the caller")
    role: UserRole = Field(default=UserRole.USER, description="Caller role")
    email: Optional[str] = Field(default=None, max_length=254)

    @field_validator('user_id', mode='before')
    @classmethod
    def validate_user_id(cls, value):
        if value is None or str(value).strip() == '':
            raise ValueError("user_id cannot be empty")
        return str(value)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_owner(self) -> bool:
        return self.role == UserRole.OWNER

    def can_manage(self, collection_owner: str) -> bool:
        """Admins manage everything, owners only their own collections."""
        if self.is_admin:
            return True
        return self.is_owner and self.user_id == collection_owner

    @classmethod
    def from_session(cls, session: dict) -> "Caller":
        """Build a caller out of a navigator session."""
        user_id = session.get('user_id') or session.get('id')
        groups: Iterable[str] = session.get('groups', []) or []
        if any(g in EDITIONS_ADMIN_GROUPS for g in groups):
            role = UserRole.ADMIN
        elif any(g in EDITIONS_OWNER_GROUPS for g in groups):
            role = UserRole.OWNER
        else:
            role = UserRole.USER
        return cls(
            user_id=user_id,
            role=role,
            email=session.get('email')
        )
