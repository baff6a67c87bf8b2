"""User rows as seen by the entitlement engine (role and trial usage only)."""

import enum

from sqlalchemy import Column, String, Boolean

from coursegate.db_base import Base
from coursegate.models.base import TimestampMixin, generate_uuid


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    email = Column(String(255), nullable=True, unique=True)
    role = Column(String(50), nullable=False, default=UserRole.USER.value)
    has_used_trial = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Set once any trial is activated; trials are single-use across all plans",
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    def __repr__(self) -> str:
        return f"<User(id={self.id}, role={self.role})>"
