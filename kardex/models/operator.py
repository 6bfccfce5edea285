import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, String, func
from sqlalchemy.orm import Mapped, mapped_column

from kardex.database import Base


class Permission(str, PyEnum):
    MOVEMENTS = "inventory-movements"
    AUDIT = "inventory-audit"
    STOCK_ADMIN = "inventory-admin"


class OperatorRole(str, PyEnum):
    ADMIN = "admin"
    STOCKKEEPER = "stockkeeper"
    AUDITOR = "auditor"
    VIEWER = "viewer"


ROLE_PERMISSIONS: dict[OperatorRole, frozenset[Permission]] = {
    OperatorRole.ADMIN: frozenset(Permission),
    OperatorRole.STOCKKEEPER: frozenset({Permission.MOVEMENTS, Permission.AUDIT}),
    OperatorRole.AUDITOR: frozenset({Permission.AUDIT}),
    OperatorRole.VIEWER: frozenset(),
}


class Operator(Base):
    """Someone who records movements or runs counts; every ledger write carries their id."""

    __tablename__ = "operators"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    username: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String, default="")
    password_hash: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[OperatorRole] = mapped_column(
        Enum(OperatorRole, values_callable=lambda x: [e.value for e in x]), default=OperatorRole.STOCKKEEPER
    )
    active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    @property
    def permissions(self) -> frozenset[Permission]:
        return ROLE_PERMISSIONS[OperatorRole(self.role)]

    def can(self, permission: Permission) -> bool:
        return permission in self.permissions
