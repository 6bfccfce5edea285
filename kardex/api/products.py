from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from kardex.api.auth import current_operator
from kardex.database import get_db
from kardex.errors import NotFound
from kardex.models.operator import Operator
from kardex.schemas.movement import KardexEntry
from kardex.schemas.product import LastCostOut, ProductCreate, ProductOut, ProductUpdate, StockMismatch
from kardex.services import cost_service, ledger_service, product_service, stock_service

router = APIRouter(prefix="/products", tags=["Products"], dependencies=[Depends(current_operator)])


@router.post("", response_model=ProductOut, status_code=201)
def create_product(data: ProductCreate, db: Session = Depends(get_db)):
    return product_service.create_product(db, data)


@router.get("", response_model=list[ProductOut])
def list_products(skip: int = 0, limit: int = 100, search: str | None = None, db: Session = Depends(get_db)):
    return product_service.list_products(db, skip=skip, limit=limit, search=search)


@router.get("/low-stock", response_model=list[ProductOut])
def low_stock(db: Session = Depends(get_db)):
    return product_service.get_low_stock(db)


@router.get("/stock-check", response_model=list[StockMismatch])
def stock_check(db: Session = Depends(get_db)):
    """Products whose stock level disagrees with the movement ledger."""
    return stock_service.verify_stock_levels(db)


@router.post("/rebuild-stock", response_model=list[StockMismatch])
def rebuild_stock(operator: Operator = Depends(current_operator), db: Session = Depends(get_db)):
    return stock_service.rebuild_stock_levels(db, operator.id)


@router.get("/{product_id}", response_model=ProductOut)
def get_product(product_id: str, db: Session = Depends(get_db)):
    return product_service.require_product(db, product_id)


@router.patch("/{product_id}", response_model=ProductOut)
def update_product(product_id: str, data: ProductUpdate, db: Session = Depends(get_db)):
    return product_service.update_product(db, product_id, data)


@router.get("/{product_id}/last-cost", response_model=LastCostOut)
def last_cost(product_id: str, db: Session = Depends(get_db)):
    return LastCostOut(product_id=product_id, last_cost=cost_service.last_cost(db, product_id))


@router.get("/{product_id}/kardex", response_model=list[KardexEntry])
def product_kardex(product_id: str, db: Session = Depends(get_db)):
    return ledger_service.get_product_kardex(db, product_id)
