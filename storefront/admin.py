"""
Admin console queries.

Every function here assumes the caller already passed the admin role check
(``admin_context``); row access is not narrowed to a single user.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .catalog import get_product
from .config import SALES_TREND_DAYS
from .context import AppContext
from .errors import BackendError, NotFound
from .models import CartItem, Order, Product, Profile, UserRole, WishlistItem
from .schemas import OrderUpdate

log = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def list_orders(db: Session) -> List[dict]:
    rows = (
        db.query(Order, Profile.full_name)
        .outerjoin(Profile, Profile.id == Order.user_id)
        .order_by(Order.created_at.desc())
        .all()
    )
    return [
        {
            "id": order.id,
            "number": order.id[:8],
            "customer": full_name,
            "created_at": order.created_at.isoformat(),
            "total_amount": order.total_amount,
            "status": order.status,
            "payment_status": order.payment_status,
            "tracking_number": order.tracking_number,
        }
        for order, full_name in rows
    ]


def update_order(db: Session, ctx: AppContext, order_id: str, changes: OrderUpdate) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found")
    try:
        order.status = changes.status
        order.tracking_number = changes.tracking_number or None
        db.commit()
        db.refresh(order)
    except SQLAlchemyError:
        db.rollback()
        log.exception("Order update failed for %s", order_id)
        raise BackendError("Error updating order")
    log.info("Order %s set to %s by %s", order.id, order.status, ctx.user_id)
    # The change belongs to the customer, not to the admin making it.
    ctx.record_change("orders", "UPDATE", order.id, user_id=order.user_id)
    return order


def list_products(db: Session) -> List[Product]:
    return db.query(Product).order_by(Product.created_at.desc()).all()


def toggle_product(db: Session, ctx: AppContext, product_id: str) -> Product:
    product = get_product(db, product_id)
    try:
        product.is_active = not product.is_active
        db.commit()
        db.refresh(product)
    except SQLAlchemyError:
        db.rollback()
        log.exception("Product toggle failed for %s", product_id)
        raise BackendError("Error updating product")
    ctx.record_change("products", "UPDATE", product.id)
    return product


def delete_product(db: Session, ctx: AppContext, product_id: str) -> None:
    product = get_product(db, product_id)
    cart_rows = db.query(CartItem.id, CartItem.user_id).filter(CartItem.product_id == product.id).all()
    wishlist_rows = db.query(WishlistItem.id, WishlistItem.user_id).filter(WishlistItem.product_id == product.id).all()
    try:
        db.query(CartItem).filter(CartItem.product_id == product.id).delete(synchronize_session=False)
        db.query(WishlistItem).filter(WishlistItem.product_id == product.id).delete(synchronize_session=False)
        db.delete(product)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception("Product delete failed for %s", product_id)
        raise BackendError("Error deleting product")
    ctx.record_change("products", "DELETE", product_id)
    # Shoppers who held the product lose those rows too.
    for row_id, uid in cart_rows:
        ctx.record_change("cart_items", "DELETE", row_id, user_id=uid)
    for row_id, uid in wishlist_rows:
        ctx.record_change("wishlist_items", "DELETE", row_id, user_id=uid)


def list_users(db: Session) -> List[dict]:
    profiles = db.query(Profile).order_by(Profile.full_name).all()
    roles = defaultdict(list)
    if profiles:
        for role in db.query(UserRole).filter(UserRole.user_id.in_([p.id for p in profiles])).order_by(UserRole.role):
            roles[role.user_id].append(role.role)
    return [
        {
            "id": p.id,
            "short_id": p.id[:8],
            "full_name": p.full_name,
            "phone": p.phone,
            "roles": roles[p.id],
        }
        for p in profiles
    ]


def dashboard(db: Session) -> dict:
    total_orders, revenue = db.query(func.count(Order.id), func.coalesce(func.sum(Order.total_amount), 0)).one()
    active_products = db.query(func.count(Product.id)).filter(Product.is_active.is_(True)).scalar()
    return {
        "total_orders": total_orders,
        "total_revenue": round(float(revenue), 2),
        "active_products": active_products,
    }


def sales_trend(db: Session, now: Optional[datetime] = None, days: int = SALES_TREND_DAYS) -> List[dict]:
    """
    Orders of the trailing ``days`` days bucketed by UTC calendar date.

    Each bucket is ``{"date": "YYYY-MM-DD", "sales": float, "orders": int}``;
    buckets are sorted by date, oldest first, and days without orders are
    omitted.
    """
    now = _as_utc(now or datetime.now(timezone.utc))
    since = now - timedelta(days=days)
    rows = db.query(Order.created_at, Order.total_amount).filter(Order.created_at >= since).all()

    buckets = {}
    for created_at, total_amount in rows:
        key = _as_utc(created_at).date().isoformat()
        bucket = buckets.setdefault(key, {"date": key, "sales": 0.0, "orders": 0})
        bucket["sales"] += float(total_amount)
        bucket["orders"] += 1

    for bucket in buckets.values():
        bucket["sales"] = round(bucket["sales"], 2)
    return [buckets[key] for key in sorted(buckets)]
