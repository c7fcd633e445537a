from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stockkeeper.api.deps import get_user_id
from stockkeeper.database import get_db
from stockkeeper.schemas.cart import AddressCreate, AddressOut, CartItemAdd, CartOut
from stockkeeper.services import cart_service

router = APIRouter(tags=["Cart"])


@router.get("/cart", response_model=CartOut)
def get_cart(user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    cart = cart_service.get_or_create_cart(db, user_id)
    db.commit()
    return cart


@router.post("/cart/items", response_model=CartOut, status_code=201)
def add_cart_item(data: CartItemAdd, user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    try:
        return cart_service.add_item(db, user_id, data.product_id, data.quantity)
    except ValueError as e:
        raise HTTPException(404, str(e))


@router.delete("/cart", status_code=204)
def clear_cart(user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    cart_service.clear_cart(db, user_id)


@router.post("/addresses", response_model=AddressOut, status_code=201)
def create_address(data: AddressCreate, user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    return cart_service.create_address(db, user_id, data)


@router.get("/addresses", response_model=list[AddressOut])
def list_addresses(user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    return cart_service.list_addresses(db, user_id)
