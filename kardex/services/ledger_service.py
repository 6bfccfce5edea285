"""Movement ledger: the single source of truth for every stock-affecting event.

Each public operation runs as one unit of work. Headers and lines are written
first, then the per-product stock deltas are applied through the stock
projection; a rejected delta rolls back the whole operation.
"""
import logging
from collections import defaultdict
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from kardex.database import atomic
from kardex.errors import (
    InsufficientStock,
    NotFound,
    PersistenceFailure,
    SessionConflict,
    StockConflict,
    ValidationError,
)
from kardex.models.audit import AuditSession, AuditStatus
from kardex.models.movement import (
    ANY_DIRECTION_CONCEPTS,
    CONCEPTS_BY_TYPE,
    MOVEMENT_SEQ,
    LedgerCounter,
    MovementConcept,
    MovementDetail,
    MovementHeader,
    MovementType,
)
from kardex.models.operator import Permission
from kardex.models.product import Product
from kardex.schemas.movement import MovementLine
from kardex.services import operator_service, stock_service

logger = logging.getLogger(__name__)


# --- Validation helpers ---

def _resolve_concept(movement_type: MovementType, concept: MovementConcept | str | None) -> MovementConcept:
    if concept is None:
        return MovementConcept.OTHER
    try:
        concept = MovementConcept(concept)
    except ValueError:
        raise ValidationError(f"Unknown concept '{concept}'")
    if concept in ANY_DIRECTION_CONCEPTS or concept in CONCEPTS_BY_TYPE[movement_type]:
        return concept
    raise ValidationError(f"Concept '{concept.value}' is not valid for {movement_type.value} movements")


def _validate_lines(db: Session, movement_type: MovementType, lines: list[MovementLine]) -> None:
    if not lines:
        raise ValidationError("A movement needs at least one line")
    seen: set[str] = set()
    for i, line in enumerate(lines, start=1):
        if not line.product_id:
            raise ValidationError(f"Line {i}: product_id is required")
        if line.quantity is None or line.quantity <= 0:
            raise ValidationError(f"Line {i}: quantity must be greater than zero")
        if line.unit_cost is None or line.unit_cost < 0:
            raise ValidationError(f"Line {i}: unit_cost cannot be negative")
        if line.new_price is not None:
            if movement_type != MovementType.IN:
                raise ValidationError(f"Line {i}: new_price is only allowed on IN movements")
            if line.new_price < 0:
                raise ValidationError(f"Line {i}: new_price cannot be negative")
        if line.product_id not in seen:
            if db.get(Product, line.product_id) is None:
                raise NotFound(f"Product {line.product_id} not found")
            seen.add(line.product_id)


def _check_session_open(db: Session, audit_session_id: str) -> None:
    session = db.get(AuditSession, audit_session_id)
    if not session:
        raise NotFound(f"Audit session {audit_session_id} not found")
    if session.status != AuditStatus.OPEN:
        raise SessionConflict(f"Audit session {audit_session_id} is {session.status.value}")


def _check_editable(db: Session, header: MovementHeader) -> None:
    if not header.audit_session_id:
        return
    session = db.get(AuditSession, header.audit_session_id)
    if session and session.status == AuditStatus.CLOSED:
        raise SessionConflict(
            f"Movement {header.id} belongs to closed audit session {session.id} and cannot be changed"
        )


def _line_effects(movement_type: MovementType, lines: list[MovementLine]) -> dict[str, int]:
    effects: dict[str, int] = defaultdict(int)
    for line in lines:
        effects[line.product_id] += line.quantity * movement_type.sign
    return effects


def _header_effects(header: MovementHeader) -> dict[str, int]:
    effects: dict[str, int] = defaultdict(int)
    sign = MovementType(header.type).sign
    for detail in header.details:
        effects[detail.product_id] += detail.quantity * sign
    return effects


def _build_details(lines: list[MovementLine]) -> list[MovementDetail]:
    return [
        MovementDetail(
            line_no=i,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_cost=line.unit_cost,
            new_price=line.new_price,
            total_cost=line.quantity * line.unit_cost,
        )
        for i, line in enumerate(lines)
    ]


def _apply_prices(db: Session, movement_type: MovementType, lines: list[MovementLine]) -> None:
    if movement_type != MovementType.IN:
        return
    for line in lines:
        if line.new_price is not None:
            stock_service.set_price(db, line.product_id, line.new_price)


def _require_movement(db: Session, movement_id: str) -> MovementHeader:
    header = db.get(MovementHeader, movement_id)
    if not header:
        raise NotFound(f"Movement {movement_id} not found")
    return header


def _next_seq(db: Session) -> int:
    """Take the next recording number.

    The increment holds the counter row until commit, so concurrent writers
    get distinct numbers in the order they commit.
    """
    result = db.execute(
        update(LedgerCounter)
        .where(LedgerCounter.name == MOVEMENT_SEQ)
        .values(value=LedgerCounter.value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise PersistenceFailure(f"Ledger counter '{MOVEMENT_SEQ}' is missing; run init_db")
    return db.execute(select(LedgerCounter.value).where(LedgerCounter.name == MOVEMENT_SEQ)).scalar_one()


# --- Write side ---

def stage_movement(
    db: Session,
    actor_id: str,
    movement_type: MovementType | str,
    reason: str,
    lines: list[MovementLine],
    audit_session_id: str | None = None,
    concept: MovementConcept | str | None = None,
    reference_doc: str = "",
    date: datetime | None = None,
) -> MovementHeader:
    """Write a movement and its stock effect inside the caller's transaction.

    Nothing is committed and the actor's permissions are not checked: callers
    such as the audit manager run this inside their own ``atomic`` block.
    """
    if not actor_id:
        raise ValidationError("actor_id is required")
    try:
        movement_type = MovementType(movement_type)
    except ValueError:
        raise ValidationError(f"Unknown movement type '{movement_type}'")
    _validate_lines(db, movement_type, lines)
    concept = _resolve_concept(movement_type, concept)
    if audit_session_id:
        _check_session_open(db, audit_session_id)

    details = _build_details(lines)
    header = MovementHeader(
        type=movement_type,
        concept=concept,
        reason=reason or "",
        reference_doc=reference_doc or "",
        seq=_next_seq(db),
        user_id=actor_id,
        audit_session_id=audit_session_id,
        total_cost_impact=sum(d.total_cost for d in details),
        details=details,
    )
    if date is not None:
        header.date = date
    db.add(header)
    db.flush()

    # Sorted so concurrent writers touch rows in the same order
    for product_id, delta in sorted(_line_effects(movement_type, lines).items()):
        stock_service.mutate(db, product_id, delta, InsufficientStock)
    _apply_prices(db, movement_type, lines)
    return header


def create_movement(
    db: Session,
    actor_id: str,
    movement_type: MovementType | str,
    reason: str,
    lines: list[MovementLine],
    audit_session_id: str | None = None,
    concept: MovementConcept | str | None = None,
    reference_doc: str = "",
    date: datetime | None = None,
) -> MovementHeader:
    with atomic(db):
        operator_service.authorize(db, actor_id, Permission.MOVEMENTS)
        header = stage_movement(
            db, actor_id, movement_type, reason, lines,
            audit_session_id=audit_session_id, concept=concept,
            reference_doc=reference_doc, date=date,
        )
    logger.info(
        "Created %s movement %s #%d (%d lines, cost impact %.2f) by %s",
        header.type.value, header.id, header.seq, len(header.details), header.total_cost_impact, actor_id,
    )
    return header


def update_movement(
    db: Session,
    movement_id: str,
    actor_id: str,
    movement_type: MovementType | str,
    reason: str,
    lines: list[MovementLine],
    concept: MovementConcept | str | None = None,
    reference_doc: str | None = None,
) -> MovementHeader:
    """Replace a movement's lines, reversing the old effect and applying the new one.

    Reversal and reapplication are netted per product, so only the final
    stock level has to be non-negative. On failure nothing changes. The
    movement keeps its date and its place in recording order.
    """
    with atomic(db):
        operator_service.authorize(db, actor_id, Permission.MOVEMENTS)
        header = _require_movement(db, movement_id)
        _check_editable(db, header)
        try:
            movement_type = MovementType(movement_type)
        except ValueError:
            raise ValidationError(f"Unknown movement type '{movement_type}'")
        _validate_lines(db, movement_type, lines)
        concept = _resolve_concept(movement_type, concept)

        old_effects = _header_effects(header)
        new_effects = _line_effects(movement_type, lines)

        details = _build_details(lines)
        header.details = details
        header.type = movement_type
        header.concept = concept
        header.reason = reason or ""
        header.user_id = actor_id
        header.total_cost_impact = sum(d.total_cost for d in details)
        if reference_doc is not None:
            header.reference_doc = reference_doc
        db.flush()

        for product_id in sorted(set(old_effects) | set(new_effects)):
            delta = new_effects.get(product_id, 0) - old_effects.get(product_id, 0)
            # Taking back stock that an earlier entry brought in is a history conflict
            error_cls = StockConflict if old_effects.get(product_id, 0) > 0 else InsufficientStock
            stock_service.mutate(db, product_id, delta, error_cls)
        _apply_prices(db, movement_type, lines)

    logger.info("Updated movement %s (%d lines) by %s", header.id, len(header.details), actor_id)
    return header


def delete_movement(db: Session, movement_id: str, actor_id: str) -> None:
    """Reverse every line of a movement and remove it."""
    with atomic(db):
        operator_service.authorize(db, actor_id, Permission.MOVEMENTS)
        header = _require_movement(db, movement_id)
        _check_editable(db, header)
        for product_id, effect in sorted(_header_effects(header).items()):
            stock_service.mutate(db, product_id, -effect, StockConflict)
        db.delete(header)
    logger.info("Deleted movement %s by %s", movement_id, actor_id)


def delete_movement_detail(db: Session, detail_id: str, actor_id: str) -> MovementHeader | None:
    """Remove one line and reverse its effect.

    Returns the remaining header, or None when the last line was removed and
    the header went with it.
    """
    with atomic(db):
        operator_service.authorize(db, actor_id, Permission.MOVEMENTS)
        detail = db.get(MovementDetail, detail_id)
        if not detail:
            raise NotFound(f"Movement detail {detail_id} not found")
        header = detail.movement
        header_id = header.id
        _check_editable(db, header)

        stock_service.mutate(db, detail.product_id, -detail.signed_quantity, StockConflict)
        header.details.remove(detail)
        if header.details:
            header.total_cost_impact = sum(d.total_cost for d in header.details)
            remaining = header
        else:
            db.delete(header)
            remaining = None
    logger.info("Deleted detail %s of movement %s by %s", detail_id, header_id, actor_id)
    return remaining


# --- Read side ---

def get_movement(db: Session, movement_id: str) -> MovementHeader | None:
    return (
        db.query(MovementHeader)
        .options(selectinload(MovementHeader.details).selectinload(MovementDetail.product))
        .filter(MovementHeader.id == movement_id)
        .first()
    )


def list_movements(
    db: Session,
    movement_type: MovementType | None = None,
    audit_session_id: str | None = None,
    product_id: str | None = None,
    skip: int = 0,
    limit: int = 100,
) -> list[MovementHeader]:
    q = db.query(MovementHeader).options(
        selectinload(MovementHeader.details).selectinload(MovementDetail.product)
    )
    if movement_type:
        q = q.filter(MovementHeader.type == movement_type)
    if audit_session_id:
        q = q.filter(MovementHeader.audit_session_id == audit_session_id)
    if product_id:
        q = q.filter(MovementHeader.details.any(MovementDetail.product_id == product_id))
    return q.order_by(MovementHeader.date.desc(), MovementHeader.seq.desc()).offset(skip).limit(limit).all()


def get_product_kardex(db: Session, product_id: str) -> list[dict]:
    """Chronological movement history of a product with the running balance."""
    if db.get(Product, product_id) is None:
        raise NotFound(f"Product {product_id} not found")
    rows = (
        db.query(MovementDetail, MovementHeader)
        .join(MovementHeader, MovementDetail.movement_id == MovementHeader.id)
        .filter(MovementDetail.product_id == product_id)
        .order_by(MovementHeader.date.asc(), MovementHeader.seq.asc(), MovementDetail.line_no.asc())
        .all()
    )
    balance = 0
    entries = []
    for detail, header in rows:
        signed = detail.quantity * MovementType(header.type).sign
        balance += signed
        entries.append({
            "movement_id": header.id,
            "detail_id": detail.id,
            "date": header.date,
            "type": header.type,
            "concept": header.concept,
            "reason": header.reason,
            "quantity": signed,
            "unit_cost": detail.unit_cost,
            "balance_after": balance,
            "audit_session_id": header.audit_session_id,
        })
    return entries
