"""
Request bodies and structured value objects.

Shipping addresses are stored on the order as JSON with camelCase keys
(fullName, phone, address, city, state, pincode); ``ShippingAddress`` is the
single place that shape is declared and validated.
"""

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]


class ShippingAddress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field(..., alias="fullName", min_length=1, max_length=100)
    phone: str = Field(..., min_length=10, max_length=15)
    address: str = Field(..., min_length=10, max_length=200)
    city: str = Field(..., min_length=2, max_length=50)
    state: str = Field(..., min_length=2, max_length=50)
    pincode: str = Field(..., min_length=6, max_length=6)

    def to_record(self) -> Dict[str, str]:
        """Dict in the stored (camelCase) layout."""
        return self.model_dump(by_alias=True)


class CheckoutRequest(BaseModel):
    """Raw checkout form; rules are applied by the checkout workflow."""

    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field("", alias="fullName")
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    notes: Optional[str] = None


class AddToCartRequest(BaseModel):
    product_id: str


class WishlistToggleRequest(BaseModel):
    product_id: str


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=15)


class OrderUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
