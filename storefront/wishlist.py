import logging
from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .catalog import get_product
from .context import AppContext
from .errors import BackendError
from .models import Product, WishlistItem

log = logging.getLogger(__name__)


def _find(db: Session, user_id: str, product_id: str):
    return (
        db.query(WishlistItem)
        .filter(WishlistItem.user_id == user_id, WishlistItem.product_id == product_id)
        .first()
    )


def is_wishlisted(db: Session, ctx: AppContext, product_id: str) -> bool:
    if ctx.user_id is None:
        return False
    return _find(db, ctx.user_id, product_id) is not None


def toggle(db: Session, ctx: AppContext, product_id: str) -> bool:
    """Adds the product to the wishlist or removes it; returns the new state."""
    product = get_product(db, product_id)
    existing = _find(db, ctx.user_id, product.id)
    try:
        if existing is not None:
            db.delete(existing)
            row_id, event = existing.id, "DELETE"
        else:
            item = WishlistItem(user_id=ctx.user_id, product_id=product.id)
            db.add(item)
            db.flush()
            row_id, event = item.id, "INSERT"
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception("Wishlist toggle failed for user %s, product %s", ctx.user_id, product.id)
        raise BackendError("Failed to update wishlist")

    ctx.record_change("wishlist_items", event, row_id)
    return existing is None


def list_wishlist(db: Session, ctx: AppContext) -> List[Product]:
    items = (
        db.query(WishlistItem)
        .options(joinedload(WishlistItem.product))
        .filter(WishlistItem.user_id == ctx.user_id)
        .order_by(WishlistItem.created_at.desc())
        .all()
    )
    return [item.product for item in items]


def wishlist_count(db: Session, ctx: AppContext) -> int:
    return ctx.cache.get_or_load(
        ("wishlist_items", ctx.user_id, "count"),
        lambda: db.query(WishlistItem).filter(WishlistItem.user_id == ctx.user_id).count(),
    )
