from datetime import datetime

from pydantic import BaseModel


class ProductCreate(BaseModel):
    sku: str
    name: str
    cost: float = 0.0
    price: float = 0.0
    min_stock: int = 0


class ProductUpdate(BaseModel):
    name: str | None = None
    cost: float | None = None
    price: float | None = None
    min_stock: int | None = None
    # Accepted only so they can be rejected explicitly
    sku: str | None = None
    stock_level: int | None = None


class ProductOut(BaseModel):
    id: str
    sku: str
    name: str
    cost: float
    price: float
    stock_level: int
    min_stock: int
    is_low_stock: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class LastCostOut(BaseModel):
    product_id: str
    last_cost: float


class StockMismatch(BaseModel):
    product_id: str
    sku: str
    stock_level: int
    ledger_balance: int
