"""
Invoice layout and PDF rendering.

``build_invoice`` is pure: it only reads the stored order, its item
snapshots and its shipping address, so an invoice never changes when a
product is edited later. Coordinates are millimetres from the top-left
corner of an A4 page. Item tables longer than one page are not paginated.
"""

from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Union

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from .models import Order

STORE_NAME = "Feel It Buy"
TAGLINE = "Experience It Before You Own It"
FOOTER = "Thank you for shopping with Feel It Buy!"
FONT = "Helvetica"

LEFT = 20
RIGHT = 190
QTY_X = 120
PRICE_X = 145
TOTAL_X = 170
TABLE_TOP = 125
ROW_HEIGHT = 7
FOOTER_Y = 280


@dataclass(frozen=True)
class Text:
    x: float
    y: float
    text: str
    size: int = 10


@dataclass(frozen=True)
class Rule:
    x1: float
    x2: float
    y: float


@dataclass
class InvoiceLayout:
    filename: str
    elements: List[Union[Text, Rule]] = field(default_factory=list)
    item_rows: List[List[str]] = field(default_factory=list)
    total_text: str = ""

    def texts(self) -> List[str]:
        return [e.text for e in self.elements if isinstance(e, Text)]


def money(amount) -> str:
    return f"Rs. {amount:,.2f}"


def order_number(order: Order) -> str:
    return order.id[:8].upper()


def invoice_filename(order: Order) -> str:
    return f"invoice-{order.id[:8]}.pdf"


def build_invoice(order: Order) -> InvoiceLayout:
    layout = InvoiceLayout(filename=invoice_filename(order))
    add = layout.elements.append

    add(Text(LEFT, 20, STORE_NAME, 20))
    add(Text(LEFT, 28, TAGLINE, 12))

    add(Text(LEFT, 45, "INVOICE", 16))
    add(Text(LEFT, 55, f"Order ID: {order_number(order)}"))
    add(Text(LEFT, 62, f"Date: {order.created_at.date().isoformat()}"))
    add(Text(LEFT, 69, f"Status: {order.status.upper()}"))

    address = order.shipping_address or {}
    add(Text(LEFT, 82, "Shipping Address:", 12))
    add(Text(LEFT, 89, address.get("fullName", "")))
    add(Text(LEFT, 96, address.get("address", "")))
    add(Text(LEFT, 103, f"{address.get('city', '')}, {address.get('state', '')} {address.get('pincode', '')}"))
    add(Text(LEFT, 110, address.get("phone", "")))

    add(Text(LEFT, TABLE_TOP, "Item"))
    add(Text(QTY_X, TABLE_TOP, "Qty"))
    add(Text(PRICE_X, TABLE_TOP, "Price"))
    add(Text(TOTAL_X, TABLE_TOP, "Total"))
    add(Rule(LEFT, RIGHT, TABLE_TOP + 2))

    y = TABLE_TOP + 10
    for item in order.items:
        row = [item.product_name, str(item.quantity), money(item.product_price), money(item.subtotal)]
        layout.item_rows.append(row)
        for x, text in zip((LEFT, QTY_X, PRICE_X, TOTAL_X), row):
            add(Text(x, y, text))
        y += ROW_HEIGHT

    add(Rule(LEFT, RIGHT, y))
    y += ROW_HEIGHT
    layout.total_text = money(order.total_amount)
    add(Text(QTY_X, y, "Total Amount:", 12))
    add(Text(TOTAL_X, y, layout.total_text, 12))

    add(Text(LEFT, FOOTER_Y, FOOTER, 8))
    return layout


def render_pdf(layout: InvoiceLayout) -> bytes:
    buffer = BytesIO()
    _, page_height = A4
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(layout.filename)
    for element in layout.elements:
        if isinstance(element, Text):
            pdf.setFont(FONT, element.size)
            pdf.drawString(element.x * mm, page_height - element.y * mm, element.text)
        else:
            pdf.line(element.x1 * mm, page_height - element.y * mm, element.x2 * mm, page_height - element.y * mm)
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
