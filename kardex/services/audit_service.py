"""Physical-count audit sessions.

A session is OPEN while counting and ends CLOSED (finalized) or CANCELLED.
Variances are always computed against the live stock level at the moment of
the adjustment, so a product already corrected with ``adjust_single`` shows
no variance at finalize time, and retrying a failed finalize is idempotent.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kardex.config import settings
from kardex.database import atomic
from kardex.errors import NotFound, SessionConflict, StockConflict, ValidationError
from kardex.models.audit import AuditSession, AuditStatus, AuditType
from kardex.models.movement import MovementConcept, MovementHeader, MovementType
from kardex.models.operator import Permission
from kardex.models.product import Product
from kardex.schemas.movement import MovementLine
from kardex.services import cost_service, ledger_service, operator_service

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_session(db: Session, session_id: str) -> AuditSession | None:
    return db.query(AuditSession).filter(AuditSession.id == session_id).first()


def get_active_session(db: Session) -> AuditSession | None:
    return (
        db.query(AuditSession)
        .filter(AuditSession.status == AuditStatus.OPEN)
        .order_by(AuditSession.start_date.desc())
        .first()
    )


def list_sessions(db: Session, skip: int = 0, limit: int = 100) -> list[AuditSession]:
    return db.query(AuditSession).order_by(AuditSession.start_date.desc()).offset(skip).limit(limit).all()


def _require_open(db: Session, session_id: str) -> AuditSession:
    session = db.get(AuditSession, session_id, populate_existing=True)
    if not session:
        raise NotFound(f"Audit session {session_id} not found")
    if session.status != AuditStatus.OPEN:
        raise SessionConflict(f"Audit session {session_id} is {session.status.value}, not OPEN")
    return session


def _live_product(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id, populate_existing=True)
    if not product:
        raise NotFound(f"Product {product_id} not found")
    return product


def _check_reconciled(db: Session, product_id: str, physical_quantity: int) -> None:
    # Another writer touched the product between our read and our write
    product = _live_product(db, product_id)
    if product.stock_level != physical_quantity:
        raise StockConflict(
            f"Stock of {product.sku} changed during the adjustment "
            f"(now {product.stock_level}, counted {physical_quantity}); count again",
            product_id=product.id,
        )


def start_session(db: Session, actor_id: str, audit_type: AuditType | str = AuditType.PARTIAL, note: str = "") -> AuditSession:
    try:
        audit_type = AuditType(audit_type)
    except ValueError:
        raise ValidationError(f"Unknown audit type '{audit_type}'")

    with atomic(db):
        operator_service.authorize(db, actor_id, Permission.AUDIT)
        active = get_active_session(db)
        if active:
            raise SessionConflict(f"Audit session {active.id} is already open")
        session = AuditSession(user_id=actor_id, type=audit_type, status=AuditStatus.OPEN, note=note or "")
        db.add(session)
        try:
            db.flush()
        except IntegrityError:
            # Lost the race against another start_session
            raise SessionConflict("Another audit session is already open")
    db.refresh(session)
    logger.info("Started %s audit session %s by %s", audit_type.value, session.id, actor_id)
    return session


def adjust_single(
    db: Session, session_id: str, actor_id: str, product_id: str, physical_quantity: int
) -> tuple[AuditSession, MovementHeader | None]:
    """Reconcile one product right away. Returns the session and the movement issued, if any."""
    if physical_quantity is None or physical_quantity < 0:
        raise ValidationError("Physical quantity cannot be negative")

    with atomic(db):
        operator_service.authorize(db, actor_id, Permission.AUDIT)
        session = _require_open(db, session_id)
        product = _live_product(db, product_id)
        diff = physical_quantity - product.stock_level
        if diff == 0:
            return session, None

        cost = cost_service.last_cost(db, product_id)
        header = ledger_service.stage_movement(
            db,
            actor_id,
            MovementType.IN if diff > 0 else MovementType.OUT,
            f"[{settings.AUDIT_QUICK_TAG}] Ajuste individual {product.sku}",
            [MovementLine(product_id=product_id, quantity=abs(diff), unit_cost=cost)],
            audit_session_id=session.id,
            concept=MovementConcept.AUDIT_QUICK,
        )
        _check_reconciled(db, product_id, physical_quantity)

    logger.info(
        "Audit %s: adjusted %s by %+d via movement %s", session_id, product_id, diff, header.id
    )
    return session, header


def finalize_session(db: Session, session_id: str, actor_id: str, counts: dict[str, int]) -> AuditSession:
    """Close a session, issuing one aggregate IN for surpluses and one aggregate OUT for deficits.

    Both movements and the status change commit together; on any failure the
    session stays OPEN and no movement from this call persists.
    """
    counts = counts or {}
    for product_id, physical in counts.items():
        if physical is None or physical < 0:
            raise ValidationError(f"Physical quantity for {product_id} cannot be negative")

    with atomic(db):
        operator_service.authorize(db, actor_id, Permission.AUDIT)
        session = _require_open(db, session_id)
        if not counts:
            has_adjustments = (
                db.query(MovementHeader.id).filter(MovementHeader.audit_session_id == session.id).first()
            )
            if not has_adjustments:
                raise ValidationError("No items have been counted in this audit session")

        surpluses: list[MovementLine] = []
        deficits: list[MovementLine] = []
        net_variance = 0.0
        system_value = 0.0
        physical_value = 0.0

        for product_id, physical in sorted(counts.items()):
            product = _live_product(db, product_id)
            cost = cost_service.last_cost(db, product_id)
            diff = physical - product.stock_level
            system_value += product.stock_level * cost
            physical_value += physical * cost
            if diff > 0:
                surpluses.append(MovementLine(product_id=product_id, quantity=diff, unit_cost=cost))
            elif diff < 0:
                deficits.append(MovementLine(product_id=product_id, quantity=-diff, unit_cost=cost))
            # A shortage is a loss and counts negatively
            net_variance += diff * cost

        tag = f"[{settings.AUDIT_SESSION_TAG}-{session.id[:8]}]"
        if surpluses:
            ledger_service.stage_movement(
                db, actor_id, MovementType.IN, f"{tag} Ajuste Sobrante", surpluses,
                audit_session_id=session.id, concept=MovementConcept.AUDIT_SESSION,
            )
        if deficits:
            ledger_service.stage_movement(
                db, actor_id, MovementType.OUT, f"{tag} Ajuste Faltante", deficits,
                audit_session_id=session.id, concept=MovementConcept.AUDIT_SESSION,
            )
        for line in surpluses + deficits:
            _check_reconciled(db, line.product_id, counts[line.product_id])

        session.status = AuditStatus.CLOSED
        session.end_date = _now()
        session.summary_total_system_value = system_value
        session.summary_total_physical_value = physical_value
        session.summary_net_variance = net_variance

    db.refresh(session)
    logger.info(
        "Closed audit session %s: %d surplus lines, %d deficit lines, net variance %.2f",
        session.id, len(surpluses), len(deficits), net_variance,
    )
    return session


def cancel_session(db: Session, session_id: str, actor_id: str) -> AuditSession:
    """Discard an OPEN session. Counts were never stored, so there is nothing to undo."""
    with atomic(db):
        operator_service.authorize(db, actor_id, Permission.AUDIT)
        session = _require_open(db, session_id)
        session.status = AuditStatus.CANCELLED
        session.end_date = _now()
    db.refresh(session)
    logger.info("Cancelled audit session %s by %s", session.id, actor_id)
    return session
