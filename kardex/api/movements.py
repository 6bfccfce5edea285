from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from kardex.api.auth import current_operator
from kardex.config import settings
from kardex.database import get_db
from kardex.errors import NotFound
from kardex.models.movement import MovementType
from kardex.models.operator import Operator
from kardex.schemas.movement import MovementCreate, MovementOut, MovementResult, MovementUpdate
from kardex.services import ledger_service

router = APIRouter(prefix="/movements", tags=["Movements"])


@router.post("", response_model=MovementResult, status_code=201)
def create_movement(data: MovementCreate, operator: Operator = Depends(current_operator), db: Session = Depends(get_db)):
    header = ledger_service.create_movement(
        db,
        actor_id=operator.id,
        movement_type=data.type,
        reason=data.reason,
        lines=data.lines,
        audit_session_id=data.audit_session_id,
        concept=data.concept,
        reference_doc=data.reference_doc,
        date=data.date,
    )
    return MovementResult(id=header.id)


@router.get("", response_model=list[MovementOut], dependencies=[Depends(current_operator)])
def list_movements(
    type: MovementType | None = None,
    audit_session_id: str | None = None,
    product_id: str | None = None,
    skip: int = 0,
    limit: int = settings.MOVEMENT_LIST_LIMIT,
    db: Session = Depends(get_db),
):
    return ledger_service.list_movements(
        db, movement_type=type, audit_session_id=audit_session_id, product_id=product_id, skip=skip, limit=limit
    )


@router.get("/{movement_id}", response_model=MovementOut, dependencies=[Depends(current_operator)])
def get_movement(movement_id: str, db: Session = Depends(get_db)):
    header = ledger_service.get_movement(db, movement_id)
    if not header:
        raise NotFound(f"Movement {movement_id} not found")
    return header


@router.put("/{movement_id}", response_model=MovementResult)
def update_movement(
    movement_id: str, data: MovementUpdate, operator: Operator = Depends(current_operator), db: Session = Depends(get_db)
):
    header = ledger_service.update_movement(
        db,
        movement_id,
        actor_id=operator.id,
        movement_type=data.type,
        reason=data.reason,
        lines=data.lines,
        concept=data.concept,
        reference_doc=data.reference_doc,
    )
    return MovementResult(id=header.id)


@router.delete("/details/{detail_id}", response_model=MovementResult)
def delete_movement_detail(
    detail_id: str, operator: Operator = Depends(current_operator), db: Session = Depends(get_db)
):
    ledger_service.delete_movement_detail(db, detail_id, operator.id)
    return MovementResult(id=detail_id)


@router.delete("/{movement_id}", response_model=MovementResult)
def delete_movement(movement_id: str, operator: Operator = Depends(current_operator), db: Session = Depends(get_db)):
    ledger_service.delete_movement(db, movement_id, operator.id)
    return MovementResult(id=movement_id)
