import logging

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .catalog import get_product, in_stock
from .context import AppContext
from .errors import BackendError, InvalidRequest, NotFound
from .models import CartItem, Product, new_id, utcnow

log = logging.getLogger(__name__)

# Dialects with a native INSERT ... ON CONFLICT DO UPDATE.
UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _upsert_increment(db: Session, user_id: str, product_id: str, stock: int) -> int:
    """
    Inserts the row with quantity 1, or bumps the existing row by one, in one
    statement. An existing row already at ``stock`` is left alone; returns
    the number of rows written.
    """
    dialect = db.get_bind().dialect.name
    try:
        insert = UPSERT_INSERTS[dialect]
    except KeyError:
        raise BackendError(f"Cart upsert is not supported on {dialect}", status_code=500)

    stmt = insert(CartItem.__table__).values(
        id=new_id(),
        user_id=user_id,
        product_id=product_id,
        quantity=1,
        created_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "product_id"],
        set_={"quantity": CartItem.__table__.c.quantity + 1},
        where=CartItem.__table__.c.quantity < stock,
    )
    return db.execute(stmt).rowcount


def _row_stock():
    """The stock of the cart row's product, as a correlated subquery."""
    return (
        select(Product.stock)
        .where(Product.id == CartItem.product_id)
        .correlate(CartItem)
        .scalar_subquery()
    )


def _own_item(db: Session, ctx: AppContext, item_id: str) -> CartItem:
    item = (
        db.query(CartItem)
        .options(joinedload(CartItem.product))
        .filter(CartItem.id == item_id, CartItem.user_id == ctx.user_id)
        .first()
    )
    if item is None:
        raise NotFound("Cart item not found")
    return item


def add_to_cart(db: Session, ctx: AppContext, product_id: str) -> CartItem:
    product = get_product(db, product_id)
    if not in_stock(product):
        raise InvalidRequest("This product is out of stock")

    try:
        written = _upsert_increment(db, ctx.user_id, product.id, product.stock)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception("Add to cart failed for user %s, product %s", ctx.user_id, product.id)
        raise BackendError("Failed to add to cart")
    if not written:
        raise InvalidRequest(f"Only {product.stock} in stock")

    item = (
        db.query(CartItem)
        .filter(CartItem.user_id == ctx.user_id, CartItem.product_id == product.id)
        .one()
    )
    ctx.record_change("cart_items", "UPSERT", item.id)
    return item


def _step_quantity(db: Session, ctx: AppContext, item: CartItem, delta: int, guard) -> bool:
    """Applies quantity = quantity + delta if ``guard`` holds for the row; returns whether it did."""
    try:
        updated = (
            db.query(CartItem)
            .filter(CartItem.id == item.id, guard)
            .update({CartItem.quantity: CartItem.quantity + delta}, synchronize_session=False)
        )
        db.commit()
        db.refresh(item)
    except SQLAlchemyError:
        db.rollback()
        log.exception("Quantity update failed for cart item %s", item.id)
        raise BackendError("Failed to update quantity")
    if updated:
        ctx.record_change("cart_items", "UPDATE", item.id)
    return bool(updated)


def can_increment(item: CartItem) -> bool:
    return item.quantity < item.product.stock


def can_decrement(item: CartItem) -> bool:
    return item.quantity > 1


def increment(db: Session, ctx: AppContext, item_id: str) -> CartItem:
    item = _own_item(db, ctx, item_id)
    if not _step_quantity(db, ctx, item, 1, CartItem.quantity < _row_stock()):
        raise InvalidRequest(f"Only {item.product.stock} in stock")
    return item


def decrement(db: Session, ctx: AppContext, item_id: str) -> CartItem:
    item = _own_item(db, ctx, item_id)
    _step_quantity(db, ctx, item, -1, CartItem.quantity > 1)
    return item


def remove_item(db: Session, ctx: AppContext, item_id: str) -> None:
    item = _own_item(db, ctx, item_id)
    try:
        db.delete(item)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception("Failed to remove cart item %s", item_id)
        raise BackendError("Failed to remove item")
    ctx.record_change("cart_items", "DELETE", item_id)


def cart_lines(db: Session, user_id: str):
    """The user's cart rows with their products, newest first."""
    return (
        db.query(CartItem)
        .options(joinedload(CartItem.product))
        .filter(CartItem.user_id == user_id)
        .order_by(CartItem.created_at.desc(), CartItem.id.desc())
        .all()
    )


def line_subtotal(item: CartItem) -> float:
    return round(item.product.price * item.quantity, 2)


def serialize_line(item: CartItem) -> dict:
    product = item.product
    return {
        "id": item.id,
        "quantity": item.quantity,
        "subtotal": line_subtotal(item),
        "can_increment": can_increment(item),
        "can_decrement": can_decrement(item),
        "product": {
            "id": product.id,
            "name": product.name,
            "price": product.price,
            "images": list(product.images or []),
            "slug": product.slug,
            "stock": product.stock,
        },
    }


def list_cart(db: Session, ctx: AppContext) -> dict:
    lines = cart_lines(db, ctx.user_id)
    subtotal = round(sum(line_subtotal(item) for item in lines), 2)
    return {
        "items": [serialize_line(item) for item in lines],
        "subtotal": subtotal,
        "shipping": 0,
        "total": subtotal,
        "can_checkout": bool(lines) and all(
            in_stock(item.product) and item.quantity <= item.product.stock for item in lines
        ),
    }


def cart_count(db: Session, ctx: AppContext) -> int:
    return ctx.cache.get_or_load(
        ("cart_items", ctx.user_id, "count"),
        lambda: db.query(CartItem).filter(CartItem.user_id == ctx.user_id).count(),
    )
