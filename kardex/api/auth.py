from fastapi import APIRouter, Cookie, Depends, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from kardex.config import settings
from kardex.database import get_db
from kardex.models.operator import Operator, OperatorRole, Permission
from kardex.services import operator_service

router = APIRouter(prefix="/auth", tags=["Auth"])


class LoginRequest(BaseModel):
    username: str
    password: str


class OperatorOut(BaseModel):
    id: str
    username: str
    full_name: str
    role: OperatorRole
    permissions: list[Permission]

    model_config = {"from_attributes": True}


def current_operator(
    token: str | None = Cookie(default=None, alias="token"),
    db: Session = Depends(get_db),
) -> Operator:
    """Dependency: the operator behind the session cookie."""
    return operator_service.operator_from_token(db, token)


@router.post("/login")
def login(data: LoginRequest, response: Response, db: Session = Depends(get_db)):
    operator, token = operator_service.login(db, data.username, data.password)
    response.set_cookie(
        "token", token, httponly=True, samesite="lax", max_age=3600 * settings.ACCESS_TOKEN_EXPIRE_HOURS
    )
    return {"success": True, "operator": OperatorOut.model_validate(operator)}


@router.post("/logout")
def logout(response: Response):
    response.delete_cookie("token")
    return {"success": True}


@router.get("/me", response_model=OperatorOut)
def me(operator: Operator = Depends(current_operator)):
    return operator
