from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from kardex.api.auth import current_operator
from kardex.database import get_db
from kardex.errors import NotFound
from kardex.models.operator import Operator
from kardex.schemas.audit import (
    AuditAdjust,
    AuditFinalize,
    AuditResult,
    AuditSessionDetailOut,
    AuditSessionOut,
    AuditStart,
)
from kardex.services import audit_service

router = APIRouter(prefix="/audits", tags=["Audits"])


@router.post("", response_model=AuditResult, status_code=201)
def start_session(data: AuditStart, operator: Operator = Depends(current_operator), db: Session = Depends(get_db)):
    session = audit_service.start_session(db, operator.id, data.type, data.note)
    return AuditResult(session=AuditSessionOut.model_validate(session))


@router.get("", response_model=list[AuditSessionOut], dependencies=[Depends(current_operator)])
def list_sessions(skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    return audit_service.list_sessions(db, skip=skip, limit=limit)


@router.get("/active", response_model=AuditSessionOut | None, dependencies=[Depends(current_operator)])
def active_session(db: Session = Depends(get_db)):
    return audit_service.get_active_session(db)


@router.get("/{session_id}", response_model=AuditSessionDetailOut, dependencies=[Depends(current_operator)])
def get_session(session_id: str, db: Session = Depends(get_db)):
    session = audit_service.get_session(db, session_id)
    if not session:
        raise NotFound(f"Audit session {session_id} not found")
    out = AuditSessionDetailOut.model_validate(session)
    out.movement_ids = [m.id for m in session.movements]
    return out


@router.post("/{session_id}/adjust", response_model=AuditResult)
def adjust_single(
    session_id: str, data: AuditAdjust, operator: Operator = Depends(current_operator), db: Session = Depends(get_db)
):
    session, header = audit_service.adjust_single(
        db, session_id, operator.id, data.product_id, data.physical_quantity
    )
    return AuditResult(session=AuditSessionOut.model_validate(session), movement_id=header.id if header else None)


@router.post("/{session_id}/finalize", response_model=AuditResult)
def finalize_session(
    session_id: str, data: AuditFinalize, operator: Operator = Depends(current_operator), db: Session = Depends(get_db)
):
    session = audit_service.finalize_session(db, session_id, operator.id, data.counts)
    return AuditResult(session=AuditSessionOut.model_validate(session))


@router.post("/{session_id}/cancel", response_model=AuditResult)
def cancel_session(session_id: str, operator: Operator = Depends(current_operator), db: Session = Depends(get_db)):
    session = audit_service.cancel_session(db, session_id, operator.id)
    return AuditResult(session=AuditSessionOut.model_validate(session))
