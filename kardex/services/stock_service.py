"""Stock projection: the materialized stock_level/cost/price of each product.

stock_level is a projection of the movement ledger. The ledger is the only
caller of ``mutate``; everything else reads.
"""
import logging

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from kardex.errors import InsufficientStock, NotFound
from kardex.models.movement import MovementDetail, MovementHeader, MovementType
from kardex.models.operator import Permission
from kardex.models.product import Product
from kardex.services import operator_service

logger = logging.getLogger(__name__)


def mutate(db: Session, product_id: str, delta: int, error_cls: type[InsufficientStock] = InsufficientStock) -> Product:
    """Apply ``delta`` to a product's stock, refusing to go below zero.

    Check and write are a single conditional UPDATE, so a concurrent writer
    that already consumed the stock makes this one match no row instead of
    overwriting it.
    """
    if delta == 0:
        product = db.get(Product, product_id)
        if not product:
            raise NotFound(f"Product {product_id} not found")
        return product

    result = db.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock_level + delta >= 0)
        .values(stock_level=Product.stock_level + delta)
        .execution_options(synchronize_session=False)
    )
    product = db.get(Product, product_id, populate_existing=True)
    if not product:
        raise NotFound(f"Product {product_id} not found")
    if result.rowcount == 0:
        logger.warning(
            "Rejected stock change for %s: current=%s delta=%s", product.sku, product.stock_level, delta
        )
        raise error_cls(
            f"Insufficient stock for {product.sku} ({product.name}). "
            f"Current: {product.stock_level}, requested change: {delta}",
            product_id=product.id,
        )
    return product


def set_price(db: Session, product_id: str, price: float) -> None:
    db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(price=price)
        .execution_options(synchronize_session=False)
    )


def _ledger_balances(db: Session) -> dict[str, int]:
    signed = case(
        (MovementHeader.type == MovementType.OUT, -MovementDetail.quantity),
        else_=MovementDetail.quantity,
    )
    rows = db.execute(
        select(MovementDetail.product_id, func.sum(signed))
        .join(MovementHeader, MovementDetail.movement_id == MovementHeader.id)
        .group_by(MovementDetail.product_id)
    ).all()
    return {product_id: int(total or 0) for product_id, total in rows}


def verify_stock_levels(db: Session) -> list[dict]:
    """Products whose stored stock differs from the signed sum of their ledger lines."""
    balances = _ledger_balances(db)
    mismatches = []
    for product in db.query(Product).order_by(Product.sku).all():
        expected = balances.get(product.id, 0)
        if product.stock_level != expected:
            mismatches.append({
                "product_id": product.id,
                "sku": product.sku,
                "stock_level": product.stock_level,
                "ledger_balance": expected,
            })
    return mismatches


def rebuild_stock_levels(db: Session, actor_id: str) -> list[dict]:
    """Recompute every product's stock from the ledger. Returns the corrections made."""
    operator = operator_service.authorize(db, actor_id, Permission.STOCK_ADMIN)
    corrections = verify_stock_levels(db)
    for item in corrections:
        if item["ledger_balance"] < 0:
            # A negative ledger sum cannot be projected; leave it for manual review
            logger.error("Ledger balance for %s is negative (%s)", item["sku"], item["ledger_balance"])
            continue
        db.execute(
            update(Product)
            .where(Product.id == item["product_id"])
            .values(stock_level=item["ledger_balance"])
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Rebuilt stock for %s: %s -> %s (by %s)",
            item["sku"], item["stock_level"], item["ledger_balance"], operator.username,
        )
    db.commit()
    db.expire_all()
    return corrections
