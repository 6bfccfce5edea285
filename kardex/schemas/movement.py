from datetime import datetime

from pydantic import BaseModel

from kardex.models.movement import MovementConcept, MovementType


class MovementLine(BaseModel):
    product_id: str
    quantity: int
    unit_cost: float = 0.0
    new_price: float | None = None


class MovementCreate(BaseModel):
    type: MovementType
    concept: MovementConcept | None = None
    reason: str = ""
    reference_doc: str = ""
    date: datetime | None = None
    audit_session_id: str | None = None
    lines: list[MovementLine]


class MovementUpdate(BaseModel):
    type: MovementType
    concept: MovementConcept | None = None
    reason: str = ""
    reference_doc: str | None = None
    lines: list[MovementLine]


class MovementDetailOut(BaseModel):
    id: str
    movement_id: str
    product_id: str
    product_sku: str = ""
    product_name: str = ""
    quantity: int
    unit_cost: float
    new_price: float | None = None
    total_cost: float

    model_config = {"from_attributes": True}


class MovementOut(BaseModel):
    id: str
    type: MovementType
    concept: MovementConcept
    reason: str
    display_reason: str
    reference_doc: str
    date: datetime
    user_id: str
    total_cost_impact: float
    audit_session_id: str | None = None
    details: list[MovementDetailOut] = []

    model_config = {"from_attributes": True}


class MovementResult(BaseModel):
    success: bool = True
    id: str


class KardexEntry(BaseModel):
    movement_id: str
    detail_id: str
    date: datetime
    type: MovementType
    concept: MovementConcept
    reason: str
    quantity: int  # signed: positive=in, negative=out
    unit_cost: float
    balance_after: int
    audit_session_id: str | None = None
