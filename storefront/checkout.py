"""
Checkout: validate the shipping form, snapshot the cart and write the order.

The order row, its item rows and the removal of the purchased cart rows are
committed in one transaction. A failure at any step rolls all of them back,
so there is never an order without items or a cart that survives its order.
"""

import enum
import logging

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .cart import line_subtotal
from .catalog import in_stock
from .context import AppContext
from .errors import BackendError, CheckoutValidationError, InvalidRequest, StorefrontError
from .models import CartItem, Order, OrderItem
from .schemas import CheckoutRequest, ShippingAddress

log = logging.getLogger(__name__)

NOTES_MAX_LENGTH = 500

# Stored key -> (label, message when missing or too short).
FIELD_MESSAGES = {
    "fullName": ("Full name", "Full name is required"),
    "phone": ("Phone number", "Valid phone number required"),
    "address": ("Address", "Address is required"),
    "city": ("City", "City is required"),
    "state": ("State", "State is required"),
    "pincode": ("Pincode", "Valid pincode required"),
}
# Fields whose length must match exactly; any length error uses the short message.
EXACT_LENGTH_FIELDS = {"pincode"}


class CheckoutState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    DONE = "done"
    FAILED = "failed"


def _message_for(error) -> str:
    field = error["loc"][0] if error["loc"] else None
    label, short_message = FIELD_MESSAGES.get(field, ("Field", "Invalid shipping address"))
    if error["type"] == "string_too_long" and field not in EXACT_LENGTH_FIELDS:
        return f"{label} must be at most {error['ctx']['max_length']} characters"
    return short_message


def validate_form(form: CheckoutRequest) -> ShippingAddress:
    """Returns the structured address or raises with the first failing rule's message."""
    try:
        address = ShippingAddress.model_validate(form.model_dump(by_alias=True, exclude={"notes"}))
    except ValidationError as e:
        raise CheckoutValidationError(_message_for(e.errors()[0]))
    if form.notes and len(form.notes) > NOTES_MAX_LENGTH:
        raise CheckoutValidationError(f"Notes must be at most {NOTES_MAX_LENGTH} characters")
    return address


class CheckoutWorkflow:
    """One checkout attempt for the identity in ``ctx``."""

    def __init__(self, db: Session, ctx: AppContext):
        self.db = db
        self.ctx = ctx
        self.state = CheckoutState.IDLE
        self.order = None
        self.error = None

    def _snapshot(self):
        lines = (
            self.db.query(CartItem)
            .options(joinedload(CartItem.product))
            .filter(CartItem.user_id == self.ctx.user_id)
            .order_by(CartItem.created_at, CartItem.id)
            .all()
        )
        if not lines:
            raise InvalidRequest("Your cart is empty")
        if any(not in_stock(line.product) or line.quantity > line.product.stock for line in lines):
            raise InvalidRequest("Some items in your cart are unavailable")
        return lines

    def _write(self, address: ShippingAddress, notes, lines) -> Order:
        total = round(sum(line_subtotal(line) for line in lines), 2)
        try:
            order = Order(
                user_id=self.ctx.user_id,
                total_amount=total,
                status="pending",
                payment_status="pending",
                shipping_address=address.to_record(),
                notes=notes or None,
            )
            self.db.add(order)
            self.db.flush()

            for line_no, line in enumerate(lines):
                self.db.add(OrderItem(
                    order_id=order.id,
                    line_no=line_no,
                    product_id=line.product.id,
                    product_name=line.product.name,
                    product_price=line.product.price,
                    quantity=line.quantity,
                    subtotal=line_subtotal(line),
                ))

            self.db.query(CartItem).filter(
                CartItem.id.in_([line.id for line in lines]),
                CartItem.user_id == self.ctx.user_id,
            ).delete(synchronize_session=False)

            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            log.exception("Checkout failed for user %s", self.ctx.user_id)
            raise BackendError("Failed to place order")

        self.db.refresh(order)
        return order

    def submit(self, form: CheckoutRequest) -> Order:
        self.state = CheckoutState.VALIDATING
        try:
            address = validate_form(form)
            lines = self._snapshot()
            cart_ids = [line.id for line in lines]
            self.state = CheckoutState.SUBMITTING
            order = self._write(address, form.notes, lines)
        except StorefrontError as e:
            self.state = CheckoutState.FAILED
            self.error = e.message
            raise

        self.state = CheckoutState.DONE
        self.order = order
        log.info("Order %s placed by %s for %.2f", order.id, order.user_id, order.total_amount)

        self.ctx.record_change("orders", "INSERT", order.id)
        for cart_id in cart_ids:
            self.ctx.record_change("cart_items", "DELETE", cart_id)
        return order


def place_order(db: Session, ctx: AppContext, form: CheckoutRequest) -> Order:
    return CheckoutWorkflow(db, ctx).submit(form)
