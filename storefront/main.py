import logging
from contextlib import asynccontextmanager
from typing import Optional

import pika
from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import accounts, admin, cart, catalog, checkout, wishlist
from .auth import AuthClient, get_auth_client
from .config import REALTIME_ENABLED, setup_logging
from .consumers import start_consumer_thread
from .context import AppContext, QueryCache, admin_context, guest_context, user_context
from .database import Base, engine, get_db
from .errors import StorefrontError
from .invoice import build_invoice, render_pdf
from .messaging.producer import ChangeFeedProducer
from .schemas import AddToCartRequest, CheckoutRequest, OrderUpdate, ProfileUpdate, WishlistToggleRequest

setup_logging()
log = logging.getLogger(__name__)

# Create database tables on startup if they don't exist.
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.change_feed is not None:
        try:
            app.state.change_feed.connect()
        except pika.exceptions.AMQPConnectionError:
            log.warning("RabbitMQ unreachable at startup; change events resume once it is up")
        start_consumer_thread(app.state.cache)
    yield
    if app.state.change_feed is not None:
        app.state.change_feed.close()


app = FastAPI(title="FeelItBuy Storefront API", lifespan=lifespan)

# Process-wide collaborators, handed to operations through AppContext.
app.state.cache = QueryCache()
app.state.auth_client = AuthClient()
app.state.change_feed = ChangeFeedProducer() if REALTIME_ENABLED else None


@app.exception_handler(StorefrontError)
def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def root():
    """Health check endpoint."""
    return {"message": "Storefront service is running"}


# --- Catalog ---

@app.get("/api/v1/products")
def list_products(
    featured: Optional[bool] = None,
    category: Optional[str] = None,
    q: Optional[str] = None,
    db: Session = Depends(get_db),
):
    products = catalog.list_products(db, featured=featured, category_slug=category, search=q)
    return [catalog.serialize_product(p) for p in products]


@app.get("/api/v1/products/{slug}")
def get_product(slug: str, db: Session = Depends(get_db), ctx: AppContext = Depends(guest_context)):
    product = catalog.get_product_by_slug(db, slug)
    data = catalog.serialize_product_detail(product)
    data["in_wishlist"] = wishlist.is_wishlisted(db, ctx, product.id)
    return data


@app.get("/api/v1/categories")
def list_categories(db: Session = Depends(get_db)):
    return [{"id": c.id, "name": c.name, "slug": c.slug} for c in catalog.list_categories(db)]


@app.get("/api/v1/categories/{slug}")
def get_category(slug: str, db: Session = Depends(get_db)):
    category = catalog.get_category(db, slug)
    products = catalog.list_products(db, category_slug=category.slug)
    return {
        "name": category.name,
        "slug": category.slug,
        "products": [catalog.serialize_product(p) for p in products],
    }


# --- Cart ---

@app.get("/api/v1/cart")
def get_cart(db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    return cart.list_cart(db, ctx)


@app.get("/api/v1/cart/count")
def get_cart_count(db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    return {"count": cart.cart_count(db, ctx)}


@app.post("/api/v1/cart/items")
def add_to_cart(req: AddToCartRequest, db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    item = cart.add_to_cart(db, ctx, req.product_id)
    return {"message": "Added to cart", "item": cart.serialize_line(item)}


@app.post("/api/v1/cart/items/{item_id}/increment")
def increment_item(item_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    return cart.serialize_line(cart.increment(db, ctx, item_id))


@app.post("/api/v1/cart/items/{item_id}/decrement")
def decrement_item(item_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    return cart.serialize_line(cart.decrement(db, ctx, item_id))


@app.delete("/api/v1/cart/items/{item_id}")
def remove_item(item_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    cart.remove_item(db, ctx, item_id)
    return {"message": "Item removed from cart"}


# --- Wishlist ---

@app.get("/api/v1/wishlist")
def get_wishlist(db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    return [catalog.serialize_product(p) for p in wishlist.list_wishlist(db, ctx)]


@app.get("/api/v1/wishlist/count")
def get_wishlist_count(db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    return {"count": wishlist.wishlist_count(db, ctx)}


@app.get("/api/v1/wishlist/{product_id}")
def get_wishlist_status(product_id: str, db: Session = Depends(get_db),
                        ctx: AppContext = Depends(user_context)):
    return {"in_wishlist": wishlist.is_wishlisted(db, ctx, product_id)}


@app.post("/api/v1/wishlist/toggle")
def toggle_wishlist(req: WishlistToggleRequest, db: Session = Depends(get_db),
                    ctx: AppContext = Depends(user_context)):
    added = wishlist.toggle(db, ctx, req.product_id)
    return {
        "in_wishlist": added,
        "message": "Added to wishlist" if added else "Removed from wishlist",
    }


# --- Checkout & orders ---

@app.post("/api/v1/checkout", status_code=201)
def place_order(req: CheckoutRequest, db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    order = checkout.place_order(db, ctx, req)
    return {
        "message": "Order placed successfully!",
        "redirect": "/",
        "order": accounts.serialize_order(order),
    }


@app.get("/api/v1/orders/mine")
def my_orders(db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    return accounts.list_my_orders(db, ctx)


@app.get("/api/v1/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    return accounts.serialize_order(accounts.get_my_order(db, ctx, order_id))


@app.get("/api/v1/orders/{order_id}/invoice")
def download_invoice(order_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    layout = build_invoice(accounts.get_my_order(db, ctx, order_id))
    return Response(
        content=render_pdf(layout),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{layout.filename}"'},
    )


# --- Profile & session ---

@app.get("/api/v1/profile")
def get_profile(db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    return accounts.serialize_profile(accounts.get_profile(db, ctx), ctx)


@app.put("/api/v1/profile")
def update_profile(req: ProfileUpdate, db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    profile = accounts.update_profile(db, ctx, req)
    return {"message": "Profile updated successfully", "profile": accounts.serialize_profile(profile, ctx)}


@app.get("/api/v1/me/roles")
def my_roles(db: Session = Depends(get_db), ctx: AppContext = Depends(user_context)):
    return accounts.roles_of(db, ctx)


@app.post("/api/v1/auth/signout")
def sign_out(ctx: AppContext = Depends(user_context), auth: AuthClient = Depends(get_auth_client)):
    accounts.sign_out(auth, ctx)
    return {"message": "Signed out", "redirect": "/"}


# --- Admin ---

@app.get("/api/v1/admin/orders")
def admin_orders(db: Session = Depends(get_db), ctx: AppContext = Depends(admin_context)):
    return admin.list_orders(db)


@app.patch("/api/v1/admin/orders/{order_id}")
def admin_update_order(order_id: str, req: OrderUpdate, db: Session = Depends(get_db),
                       ctx: AppContext = Depends(admin_context)):
    order = admin.update_order(db, ctx, order_id, req)
    return {
        "message": "Order updated successfully",
        "id": order.id,
        "status": order.status,
        "tracking_number": order.tracking_number,
    }


@app.get("/api/v1/admin/products")
def admin_products(db: Session = Depends(get_db), ctx: AppContext = Depends(admin_context)):
    return [catalog.serialize_product(p) for p in admin.list_products(db)]


@app.post("/api/v1/admin/products/{product_id}/toggle")
def admin_toggle_product(product_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(admin_context)):
    product = admin.toggle_product(db, ctx, product_id)
    return {"message": "Product updated successfully", "id": product.id, "is_active": product.is_active}


@app.delete("/api/v1/admin/products/{product_id}")
def admin_delete_product(product_id: str, db: Session = Depends(get_db), ctx: AppContext = Depends(admin_context)):
    admin.delete_product(db, ctx, product_id)
    return {"message": "Product deleted successfully"}


@app.get("/api/v1/admin/users")
def admin_users(db: Session = Depends(get_db), ctx: AppContext = Depends(admin_context)):
    return admin.list_users(db)


@app.get("/api/v1/admin/analytics")
def admin_analytics(db: Session = Depends(get_db), ctx: AppContext = Depends(admin_context)):
    data = admin.dashboard(db)
    data["sales_trend"] = admin.sales_trend(db)
    return data
