from sqlalchemy.orm import Session

from kardex.errors import NotFound
from kardex.models.movement import MovementDetail, MovementHeader
from kardex.models.product import Product


def last_cost(db: Session, product_id: str) -> float:
    """Unit cost of the most recently dated ledger line for a product.

    Movements sharing a date are ordered by when they were recorded, and
    lines within a movement by position, so the last line entered wins.

    Falls back to the catalog cost when the product has no movements yet.
    Used to pre-fill costs on new movements and audit adjustments so costs do
    not drift through manual re-entry.
    """
    product = db.get(Product, product_id)
    if not product:
        raise NotFound(f"Product {product_id} not found")

    row = (
        db.query(MovementDetail.unit_cost)
        .join(MovementHeader, MovementDetail.movement_id == MovementHeader.id)
        .filter(MovementDetail.product_id == product_id)
        .order_by(MovementHeader.date.desc(), MovementHeader.seq.desc(), MovementDetail.line_no.desc())
        .first()
    )
    if row is not None:
        return row[0]
    return product.cost or 0.0
