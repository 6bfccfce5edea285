from datetime import datetime

from pydantic import BaseModel

from kardex.models.audit import AuditStatus, AuditType


class AuditStart(BaseModel):
    type: AuditType = AuditType.PARTIAL
    note: str = ""


class AuditAdjust(BaseModel):
    product_id: str
    physical_quantity: int


class AuditFinalize(BaseModel):
    counts: dict[str, int] = {}  # product_id -> physical quantity


class AuditSessionOut(BaseModel):
    id: str
    user_id: str
    type: AuditType
    status: AuditStatus
    note: str
    start_date: datetime
    end_date: datetime | None = None
    summary_total_system_value: float
    summary_total_physical_value: float
    summary_net_variance: float

    model_config = {"from_attributes": True}


class AuditSessionDetailOut(AuditSessionOut):
    movement_ids: list[str] = []


class AuditResult(BaseModel):
    success: bool = True
    session: AuditSessionOut
    movement_id: str | None = None
