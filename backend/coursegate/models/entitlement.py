"""
UserEntitlement model: the authoritative access-control table.

One row per (user_id, type, target_id). Rows are never deleted; revocation
flips status so the audit history stays intact. WHOLE_APP rows have a NULL
target_id, and a partial unique index covers them because NULLs never
collide in an ordinary unique constraint.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, String, ForeignKey, Index, text

from coursegate.db_base import Base
from coursegate.models.base import TimestampMixin, UTCDateTime, generate_uuid


class EntitlementStatus(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class EntitlementSource(str, enum.Enum):
    WEB = "WEB"
    APP = "APP"
    ADMIN = "ADMIN"


class UserEntitlement(Base, TimestampMixin):
    __tablename__ = "user_entitlements"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False)
    type = Column(String(20), nullable=False, comment="WHOLE_APP | CATEGORY | COURSE")
    target_id = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=EntitlementStatus.ACTIVE.value)
    valid_until = Column(UTCDateTime(), nullable=True, comment="NULL means perpetual")
    source = Column(String(20), nullable=True)

    __table_args__ = (
        Index(
            "uq_user_entitlements_user_type_target",
            "user_id", "type", "target_id",
            unique=True,
        ),
        Index(
            "uq_user_entitlements_user_whole_app",
            "user_id", "type",
            unique=True,
            postgresql_where=text("target_id IS NULL"),
            sqlite_where=text("target_id IS NULL"),
        ),
        Index("ix_user_entitlements_user_status", "user_id", "status"),
    )

    def is_effective(self, now: datetime) -> bool:
        """Active and not past its expiry."""
        if self.status != EntitlementStatus.ACTIVE.value:
            return False
        return self.valid_until is None or self.valid_until > now

    @property
    def key(self) -> tuple[str, Optional[str]]:
        return (self.type, self.target_id)

    def __repr__(self) -> str:
        return (
            f"<UserEntitlement(user_id={self.user_id}, type={self.type}, "
            f"target_id={self.target_id}, status={self.status})>"
        )
