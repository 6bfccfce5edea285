import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import DDL, DateTime, Enum, Float, ForeignKey, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kardex.database import Base
from kardex.models.product import Product


class MovementType(str, PyEnum):
    IN = "IN"
    OUT = "OUT"

    @property
    def sign(self) -> int:
        return 1 if self is MovementType.IN else -1


class MovementConcept(str, PyEnum):
    PURCHASE = "Compra"
    CONSIGNMENT = "Concesión"
    PRODUCT_RETURN = "Devolución de Producto"
    WITHDRAWAL = "Retiro de Producto"
    GIFT = "Regalía"
    AUDIT_QUICK = "AUDITORIA-RAPIDA"
    AUDIT_SESSION = "AUDIT-SESSION"
    OTHER = "Otro"


# Concepts a user may pick per direction; audit concepts are issued by the audit manager
CONCEPTS_BY_TYPE = {
    MovementType.IN: {
        MovementConcept.PURCHASE,
        MovementConcept.CONSIGNMENT,
        MovementConcept.PRODUCT_RETURN,
    },
    MovementType.OUT: {
        MovementConcept.WITHDRAWAL,
        MovementConcept.GIFT,
    },
}
ANY_DIRECTION_CONCEPTS = {
    MovementConcept.AUDIT_QUICK,
    MovementConcept.AUDIT_SESSION,
    MovementConcept.OTHER,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MovementHeader(Base):
    __tablename__ = "movement_headers"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    type: Mapped[MovementType] = mapped_column(
        Enum(MovementType, values_callable=lambda x: [e.value for e in x]), nullable=False
    )
    concept: Mapped[MovementConcept] = mapped_column(
        Enum(MovementConcept, values_callable=lambda x: [e.value for e in x]),
        default=MovementConcept.OTHER,
    )
    reason: Mapped[str] = mapped_column(Text, default="")
    reference_doc: Mapped[str] = mapped_column(String, default="")
    date: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, index=True)
    # Recording order; breaks ties between movements that share a date
    seq: Mapped[int] = mapped_column(Integer, nullable=False, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    total_cost_impact: Mapped[float] = mapped_column(Float, default=0.0)

    # Back-reference only: the session does not own its movements
    audit_session_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("audit_sessions.id"), nullable=True, index=True
    )

    details: Mapped[list["MovementDetail"]] = relationship(
        "MovementDetail",
        back_populates="movement",
        cascade="all, delete-orphan",
        order_by="MovementDetail.line_no",
    )

    @property
    def display_reason(self) -> str:
        """Reason as shown in the Kardex, prefixed with its concept tag."""
        tag = f"[{MovementConcept(self.concept).value}]"
        if self.reason.startswith(tag):
            return self.reason
        return f"{tag} {self.reason}".rstrip()


class MovementDetail(Base):
    __tablename__ = "movement_details"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    movement_id: Mapped[str] = mapped_column(
        String, ForeignKey("movement_headers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(String, ForeignKey("products.id"), nullable=False, index=True)
    line_no: Mapped[int] = mapped_column(Integer, default=0)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[float] = mapped_column(Float, default=0.0)
    new_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_cost: Mapped[float] = mapped_column(Float, default=0.0)

    movement: Mapped["MovementHeader"] = relationship("MovementHeader", back_populates="details")
    product: Mapped[Product] = relationship(Product)

    @property
    def signed_quantity(self) -> int:
        return self.quantity * MovementType(self.movement.type).sign

    @property
    def product_name(self) -> str:
        return self.product.name if self.product else ""

    @property
    def product_sku(self) -> str:
        return self.product.sku if self.product else ""


class LedgerCounter(Base):
    """Named monotonic counters. The row lock taken on increment also orders concurrent writers."""

    __tablename__ = "ledger_counters"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


MOVEMENT_SEQ = "movements"

event.listen(
    LedgerCounter.__table__,
    "after_create",
    DDL(f"INSERT INTO ledger_counters (name, value) VALUES ('{MOVEMENT_SEQ}', 0)"),
)
