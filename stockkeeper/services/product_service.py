"""Catalog records. Stock counters are left to stock_service."""
import logging

from sqlalchemy.orm import Session

from stockkeeper.config import settings
from stockkeeper.database import unit_of_work
from stockkeeper.models.product import Product
from stockkeeper.schemas.product import ProductCreate, ProductUpdate
from stockkeeper.services import audit_service, stock_service

logger = logging.getLogger(__name__)


def create_product(db: Session, data: ProductCreate, user_id: str | None = None) -> Product:
    """Insert the product with zero stock, then receive ``initial_stock`` through the ledger."""
    with unit_of_work(db):
        product = Product(
            sku=data.sku,
            name=data.name,
            description=data.description,
            category=data.category,
            price=data.price,
            is_imported=data.is_imported,
            on_hand_stock=0,
            reserved_stock=0,
            reorder_level=data.reorder_level if data.reorder_level is not None else settings.DEFAULT_REORDER_LEVEL,
            low_stock_threshold=(
                data.low_stock_threshold if data.low_stock_threshold is not None else settings.DEFAULT_LOW_STOCK_THRESHOLD
            ),
            unit_cost=data.unit_cost,
        )
        db.add(product)
        db.flush()

        if data.initial_stock > 0:
            stock_service.add_stock(
                db, product.id, data.initial_stock,
                unit_cost=data.unit_cost,
                reason="Initial stock on product creation",
                user_id=user_id,
            )
        audit_service.record_event(db, "product.create", "product", product.id, user_id=user_id, sku=product.sku)
        logger.info("Created product %s with %d units", product.sku, data.initial_stock)

    db.refresh(product)
    return product


def get_product(db: Session, product_id: str) -> Product | None:
    return db.get(Product, product_id)


def get_product_by_sku(db: Session, sku: str) -> Product | None:
    return db.query(Product).filter(Product.sku == sku).first()


def list_products(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    category: str | None = None,
    include_inactive: bool = False,
) -> list[Product]:
    q = db.query(Product)
    if not include_inactive:
        q = q.filter(Product.is_active.is_(True))
    if category:
        q = q.filter(Product.category == category)
    return q.order_by(Product.sku).offset(skip).limit(limit).all()


def update_product(db: Session, product_id: str, data: ProductUpdate, user_id: str | None = None) -> Product | None:
    with unit_of_work(db):
        product = get_product(db, product_id)
        if not product:
            return None
        changes = data.model_dump(exclude_unset=True)
        for key, value in changes.items():
            setattr(product, key, value)
        audit_service.record_event(db, "product.update", "product", product.id, user_id=user_id, **changes)
    db.refresh(product)
    return product


def set_active(db: Session, product_id: str, active: bool, user_id: str | None = None) -> Product | None:
    """Products are never deleted; deactivation stops new reservations and keeps the ledger intact."""
    with unit_of_work(db):
        # Row lock so a deactivation cannot interleave with a reservation
        product = stock_service.lock_products(db, [product_id]).get(product_id)
        if not product:
            return None
        product.is_active = active
        audit_service.record_event(
            db, "product.activate" if active else "product.deactivate", "product", product.id, user_id=user_id,
        )
    db.refresh(product)
    return product
