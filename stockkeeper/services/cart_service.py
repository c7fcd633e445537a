from sqlalchemy.orm import Session

from stockkeeper.database import unit_of_work
from stockkeeper.models.cart import Address, Cart, CartItem
from stockkeeper.models.product import Product
from stockkeeper.schemas.cart import AddressCreate


def get_or_create_cart(db: Session, user_id: str) -> Cart:
    cart = db.query(Cart).filter(Cart.user_id == user_id).first()
    if not cart:
        cart = Cart(user_id=user_id)
        db.add(cart)
        db.flush()
    return cart


def add_item(db: Session, user_id: str, product_id: str, quantity: int = 1) -> Cart:
    with unit_of_work(db):
        product = db.get(Product, product_id)
        if not product or not product.is_active:
            raise ValueError(f"Product {product_id} not found")

        cart = get_or_create_cart(db, user_id)
        item = next((i for i in cart.items if i.product_id == product_id), None)
        if item:
            item.quantity += quantity
        else:
            cart.items.append(CartItem(product_id=product_id, quantity=quantity, price_at_add=product.price))
    db.refresh(cart)
    return cart


def clear_cart(db: Session, user_id: str) -> None:
    with unit_of_work(db):
        cart = db.query(Cart).filter(Cart.user_id == user_id).first()
        if cart:
            cart.items.clear()


def create_address(db: Session, user_id: str, data: AddressCreate) -> Address:
    with unit_of_work(db):
        address = Address(user_id=user_id, **data.model_dump())
        address.state = address.state.upper()
        db.add(address)
    db.refresh(address)
    return address


def list_addresses(db: Session, user_id: str) -> list[Address]:
    return db.query(Address).filter(Address.user_id == user_id).order_by(Address.created_at).all()
