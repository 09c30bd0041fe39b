"""
User Model
==========

One row per person who has signed in through the identity provider.

``email`` and ``provider_subject_id`` are each unique. The subject id is
nullable only for rows created before a subject was bound. Users are never
hard-deleted; deactivation flips ``is_active``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36,
    )
    email: str = Field(index=True, unique=True, max_length=320)
    display_name: Optional[str] = Field(default=None, max_length=255)
    provider_subject_id: Optional[str] = Field(default=None, unique=True, nullable=True, max_length=255)
    avatar_url: Optional[str] = Field(default=None, max_length=1024)
    is_active: bool = Field(default=True)
    preferences: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True))
    last_login_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    def public_dict(self) -> Dict[str, Any]:
        """Client-facing projection (camelCase, no internal flags)."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.display_name,
            "picture": self.avatar_url,
            "preferences": self.preferences or {},
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "lastLoginAt": self.last_login_at.isoformat() if self.last_login_at else None,
        }
