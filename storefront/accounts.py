import logging
from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .auth import ADMIN_ROLE, AuthClient, has_role
from .context import AppContext
from .errors import BackendError, NotFound
from .models import Order, Profile, UserRole
from .schemas import ProfileUpdate

log = logging.getLogger(__name__)


def serialize_order(order: Order) -> dict:
    return {
        "id": order.id,
        "number": order.id[:8].upper(),
        "created_at": order.created_at.isoformat(),
        "total_amount": order.total_amount,
        "status": order.status,
        "payment_status": order.payment_status,
        "tracking_number": order.tracking_number,
        "notes": order.notes,
        "shipping_address": dict(order.shipping_address or {}),
        "items": [
            {
                "product_id": item.product_id,
                "product_name": item.product_name,
                "product_price": item.product_price,
                "quantity": item.quantity,
                "subtotal": item.subtotal,
            }
            for item in order.items
        ],
    }


def list_my_orders(db: Session, ctx: AppContext) -> List[dict]:
    """The caller's orders, newest first; cached until an orders change arrives."""

    def load():
        orders = (
            db.query(Order)
            .options(selectinload(Order.items))
            .filter(Order.user_id == ctx.user_id)
            .order_by(Order.created_at.desc())
            .all()
        )
        return [serialize_order(o) for o in orders]

    return ctx.cache.get_or_load(("orders", ctx.user_id), load)


def get_my_order(db: Session, ctx: AppContext, order_id: str) -> Order:
    order = (
        db.query(Order)
        .options(selectinload(Order.items))
        .filter(Order.id == order_id, Order.user_id == ctx.user_id)
        .first()
    )
    if order is None:
        raise NotFound("Order not found")
    return order


def get_profile(db: Session, ctx: AppContext) -> Profile:
    profile = db.get(Profile, ctx.user_id)
    if profile is None:
        # Profiles are created with the identity; fall back to an empty one.
        profile = Profile(id=ctx.user_id)
    return profile


def update_profile(db: Session, ctx: AppContext, changes: ProfileUpdate) -> Profile:
    profile = db.get(Profile, ctx.user_id)
    try:
        if profile is None:
            profile = Profile(id=ctx.user_id)
            db.add(profile)
        for field, value in changes.model_dump(exclude_unset=True).items():
            setattr(profile, field, value)
        db.commit()
        db.refresh(profile)
    except SQLAlchemyError:
        db.rollback()
        log.exception("Profile update failed for %s", ctx.user_id)
        raise BackendError("Error updating profile")
    ctx.record_change("profiles", "UPDATE", profile.id)
    return profile


def serialize_profile(profile: Profile, ctx: AppContext) -> dict:
    return {
        "id": profile.id,
        "email": ctx.identity.email if ctx.identity else None,
        "full_name": profile.full_name,
        "phone": profile.phone,
    }


def roles_of(db: Session, ctx: AppContext) -> dict:
    roles = [r.role for r in db.query(UserRole).filter(UserRole.user_id == ctx.user_id).order_by(UserRole.role)]
    return {"roles": roles, "is_admin": has_role(db, ctx.user_id, ADMIN_ROLE)}


def sign_out(auth: AuthClient, ctx: AppContext) -> None:
    auth.sign_out(ctx.identity.access_token)
    dropped = ctx.cache.invalidate_user(ctx.user_id)
    log.info("User %s signed out, dropped %d cached entries", ctx.user_id, dropped)
