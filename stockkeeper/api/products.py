from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stockkeeper.api.deps import raise_for_result
from stockkeeper.database import get_db
from stockkeeper.schemas.product import (
    LedgerEntryOut,
    ProductCreate,
    ProductOut,
    ProductUpdate,
    ReconciliationOut,
    ReplayOut,
    StockAdjust,
    StockDamage,
    StockReceive,
    StockReturn,
    StockSnapshotOut,
    StockStatusOut,
    StockTransfer,
)
from stockkeeper.services import availability_service, ledger_service, product_service, stock_service

router = APIRouter(prefix="/products", tags=["Products"])


def _snapshot(result) -> StockSnapshotOut:
    raise_for_result(result)
    return result.snapshot


@router.post("", response_model=ProductOut, status_code=201)
def create_product(data: ProductCreate, db: Session = Depends(get_db)):
    existing = product_service.get_product_by_sku(db, data.sku)
    if existing:
        raise HTTPException(400, f"Product with SKU {data.sku} already exists")
    return product_service.create_product(db, data)


@router.get("", response_model=list[ProductOut])
def list_products(
    skip: int = 0, limit: int = 100, category: str | None = None, include_inactive: bool = False,
    db: Session = Depends(get_db),
):
    return product_service.list_products(db, skip=skip, limit=limit, category=category, include_inactive=include_inactive)


@router.get("/low-stock", response_model=list[StockStatusOut])
def low_stock(db: Session = Depends(get_db)):
    return availability_service.low_stock_products(db)


@router.get("/reorder", response_model=list[StockStatusOut])
def needs_reorder(db: Session = Depends(get_db)):
    return availability_service.products_needing_reorder(db)


@router.get("/summary")
def inventory_summary(db: Session = Depends(get_db)):
    return availability_service.inventory_summary(db)


@router.get("/reconcile", response_model=list[ReconciliationOut])
def reconcile_all(db: Session = Depends(get_db)):
    return ledger_service.reconcile_all(db)


@router.get("/movements")
def movements(
    product_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    db: Session = Depends(get_db),
):
    return ledger_service.movement_summary(db, product_id, start_date, end_date)


@router.get("/{product_id}", response_model=ProductOut)
def get_product(product_id: str, db: Session = Depends(get_db)):
    product = product_service.get_product(db, product_id)
    if not product:
        raise HTTPException(404, "Product not found")
    return product


@router.patch("/{product_id}", response_model=ProductOut)
def update_product(product_id: str, data: ProductUpdate, db: Session = Depends(get_db)):
    product = product_service.update_product(db, product_id, data)
    if not product:
        raise HTTPException(404, "Product not found")
    return product


@router.post("/{product_id}/deactivate", response_model=ProductOut)
def deactivate_product(product_id: str, db: Session = Depends(get_db)):
    product = product_service.set_active(db, product_id, False)
    if not product:
        raise HTTPException(404, "Product not found")
    return product


@router.post("/{product_id}/activate", response_model=ProductOut)
def activate_product(product_id: str, db: Session = Depends(get_db)):
    product = product_service.set_active(db, product_id, True)
    if not product:
        raise HTTPException(404, "Product not found")
    return product


@router.get("/{product_id}/status", response_model=StockStatusOut)
def stock_status(product_id: str, db: Session = Depends(get_db)):
    status = availability_service.get_stock_status(db, product_id)
    if not status:
        raise HTTPException(404, "Product not found")
    return status


@router.post("/{product_id}/stock/receive", response_model=StockSnapshotOut)
def receive_stock(product_id: str, data: StockReceive, db: Session = Depends(get_db)):
    return _snapshot(stock_service.add_stock(
        db, product_id, data.quantity,
        unit_cost=data.unit_cost, reason=data.reason, reference_number=data.reference_number,
    ))


@router.post("/{product_id}/stock/adjust", response_model=StockSnapshotOut)
def adjust_stock(product_id: str, data: StockAdjust, db: Session = Depends(get_db)):
    return _snapshot(stock_service.adjust_to(db, product_id, data.target_quantity, reason=data.reason))


@router.post("/{product_id}/stock/damage", response_model=StockSnapshotOut)
def record_damage(product_id: str, data: StockDamage, db: Session = Depends(get_db)):
    return _snapshot(stock_service.record_damage(db, product_id, data.quantity, data.reason))


@router.post("/{product_id}/stock/return", response_model=StockSnapshotOut)
def record_return(product_id: str, data: StockReturn, db: Session = Depends(get_db)):
    return _snapshot(stock_service.record_return(
        db, product_id, data.quantity, order_id=data.order_id, reason=data.reason,
    ))


@router.post("/{product_id}/stock/transfer-in", response_model=StockSnapshotOut)
def transfer_in(product_id: str, data: StockTransfer, db: Session = Depends(get_db)):
    return _snapshot(stock_service.record_transfer_in(
        db, product_id, data.quantity, source=data.location, reason=data.reason,
    ))


@router.post("/{product_id}/stock/transfer-out", response_model=StockSnapshotOut)
def transfer_out(product_id: str, data: StockTransfer, db: Session = Depends(get_db)):
    return _snapshot(stock_service.record_transfer_out(
        db, product_id, data.quantity, destination=data.location, reason=data.reason,
    ))


@router.get("/{product_id}/ledger", response_model=list[LedgerEntryOut])
def ledger(product_id: str, skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    if not product_service.get_product(db, product_id):
        raise HTTPException(404, "Product not found")
    return ledger_service.list_entries(db, product_id, skip=skip, limit=limit)


@router.get("/{product_id}/ledger/replay", response_model=ReplayOut)
def replay(
    product_id: str,
    until: datetime | None = None,
    until_entry_id: int | None = None,
    db: Session = Depends(get_db),
):
    if not product_service.get_product(db, product_id):
        raise HTTPException(404, "Product not found")
    return ledger_service.replay(db, product_id, until=until, until_entry_id=until_entry_id)


@router.get("/{product_id}/reconcile", response_model=ReconciliationOut)
def reconcile(product_id: str, db: Session = Depends(get_db)):
    result = ledger_service.reconcile(db, product_id)
    if not result:
        raise HTTPException(404, "Product not found")
    return result
