"""Operators: who is acting on the ledger, and what they are allowed to do.

Every write operation in the ledger and the audit manager names an actor.
``authorize`` resolves that actor and checks the permission the operation
needs, so the rules hold no matter which entry point calls the service.
"""
import logging
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from sqlalchemy.orm import Session

from kardex.config import settings
from kardex.database import atomic
from kardex.errors import Forbidden, Unauthenticated, ValidationError
from kardex.models.operator import Operator, OperatorRole, Permission

logger = logging.getLogger(__name__)


def _hash(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def _password_matches(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())


def issue_token(operator: Operator) -> str:
    expires = datetime.now(timezone.utc) + timedelta(hours=settings.ACCESS_TOKEN_EXPIRE_HOURS)
    return jwt.encode(
        {"sub": operator.id, "role": OperatorRole(operator.role).value, "exp": expires},
        settings.SECRET_KEY,
        algorithm="HS256",
    )


def operator_from_token(db: Session, token: str | None) -> Operator:
    if not token:
        raise Unauthenticated("Not authenticated")
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid or expired token")
    operator = db.get(Operator, payload.get("sub"))
    if not operator or not operator.active:
        raise Unauthenticated("Operator not found or disabled")
    return operator


def login(db: Session, username: str, password: str) -> tuple[Operator, str]:
    operator = db.query(Operator).filter(Operator.username == username, Operator.active.is_(True)).first()
    if not operator or not _password_matches(password, operator.password_hash):
        logger.warning("Failed login for %s", username)
        raise Unauthenticated("Invalid username or password")
    return operator, issue_token(operator)


def authorize(db: Session, actor_id: str, permission: Permission) -> Operator:
    """Resolve the acting operator, refusing unknown, disabled or under-privileged ones."""
    if not actor_id:
        raise ValidationError("actor_id is required")
    operator = db.get(Operator, actor_id)
    if not operator or not operator.active:
        raise Forbidden(f"Operator {actor_id} is unknown or disabled")
    if not operator.can(permission):
        logger.warning("Operator %s denied %s", operator.username, permission.value)
        raise Forbidden(f"Operator {operator.username} lacks the '{permission.value}' permission")
    return operator


def create_operator(
    db: Session,
    username: str,
    password: str,
    full_name: str = "",
    role: OperatorRole | str = OperatorRole.STOCKKEEPER,
) -> Operator:
    username = (username or "").strip()
    if not username or not password:
        raise ValidationError("Username and password are required")
    try:
        role = OperatorRole(role)
    except ValueError:
        raise ValidationError(f"Unknown role '{role}'")

    with atomic(db):
        if db.query(Operator.id).filter(Operator.username == username).first():
            raise ValidationError(f"Username '{username}' already exists")
        operator = Operator(
            username=username,
            full_name=full_name or username,
            password_hash=_hash(password),
            role=role,
        )
        db.add(operator)
    db.refresh(operator)
    logger.info("Created %s operator %s", role.value, username)
    return operator


def ensure_default_admin(db: Session) -> None:
    """Bootstrap an admin on an empty database."""
    if db.query(Operator.id).first() is None:
        create_operator(
            db,
            settings.DEFAULT_ADMIN_USERNAME,
            settings.DEFAULT_ADMIN_PASSWORD,
            full_name="Admin",
            role=OperatorRole.ADMIN,
        )
