import uuid
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, Float, Index, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kardex.database import Base
from kardex.models.movement import MovementHeader


class AuditStatus(str, PyEnum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class AuditType(str, PyEnum):
    PARTIAL = "PARTIAL"
    FULL = "FULL"


class AuditSession(Base):
    __tablename__ = "audit_sessions"
    __table_args__ = (
        # At most one OPEN session at a time
        Index(
            "ux_audit_sessions_single_open",
            "status",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    type: Mapped[AuditType] = mapped_column(
        Enum(AuditType, values_callable=lambda x: [e.value for e in x]), default=AuditType.PARTIAL
    )
    status: Mapped[AuditStatus] = mapped_column(
        Enum(AuditStatus, values_callable=lambda x: [e.value for e in x]), default=AuditStatus.OPEN
    )
    note: Mapped[str] = mapped_column(Text, default="")
    start_date: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    summary_total_system_value: Mapped[float] = mapped_column(Float, default=0.0)
    summary_total_physical_value: Mapped[float] = mapped_column(Float, default=0.0)
    summary_net_variance: Mapped[float] = mapped_column(Float, default=0.0)

    movements: Mapped[list[MovementHeader]] = relationship(
        MovementHeader, order_by=[MovementHeader.date, MovementHeader.seq], viewonly=True
    )

    @property
    def is_open(self) -> bool:
        return self.status == AuditStatus.OPEN
