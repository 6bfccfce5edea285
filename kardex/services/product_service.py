from sqlalchemy.orm import Session

from kardex.database import atomic
from kardex.errors import NotFound, ValidationError
from kardex.models.product import Product
from kardex.schemas.product import ProductCreate, ProductUpdate


def create_product(db: Session, data: ProductCreate) -> Product:
    sku = data.sku.strip()
    if not sku:
        raise ValidationError("SKU is required")
    if get_product_by_sku(db, sku):
        raise ValidationError(f"Product with SKU {sku} already exists")
    if data.cost < 0 or data.price < 0:
        raise ValidationError("Cost and price cannot be negative")

    # New products always start at zero; stock only enters through the ledger
    product = Product(
        sku=sku,
        name=data.name,
        cost=data.cost,
        price=data.price,
        stock_level=0,
        min_stock=data.min_stock,
    )
    with atomic(db):
        db.add(product)
    db.refresh(product)
    return product


def get_product(db: Session, product_id: str) -> Product | None:
    return db.query(Product).filter(Product.id == product_id).first()


def require_product(db: Session, product_id: str) -> Product:
    product = get_product(db, product_id)
    if not product:
        raise NotFound(f"Product {product_id} not found")
    return product


def get_product_by_sku(db: Session, sku: str) -> Product | None:
    return db.query(Product).filter(Product.sku == sku).first()


def list_products(db: Session, skip: int = 0, limit: int = 100, search: str | None = None) -> list[Product]:
    q = db.query(Product)
    if search:
        like = f"%{search}%"
        q = q.filter(Product.name.ilike(like) | Product.sku.ilike(like))
    return q.order_by(Product.name).offset(skip).limit(limit).all()


def update_product(db: Session, product_id: str, data: ProductUpdate) -> Product:
    product = require_product(db, product_id)
    update_data = data.model_dump(exclude_unset=True)

    sku = update_data.pop("sku", None)
    if sku is not None and sku != product.sku:
        raise ValidationError("SKU cannot be changed after creation")
    if update_data.pop("stock_level", None) is not None:
        raise ValidationError("Stock level can only change through inventory movements")
    for field in ("cost", "price", "min_stock"):
        if (update_data.get(field) or 0) < 0:
            raise ValidationError(f"{field} cannot be negative")

    with atomic(db):
        for field, value in update_data.items():
            if value is not None:
                setattr(product, field, value)
    db.refresh(product)
    return product


def get_low_stock(db: Session) -> list[Product]:
    return db.query(Product).filter(Product.stock_level <= Product.min_stock).order_by(Product.stock_level).all()
