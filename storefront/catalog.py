import math
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload, selectinload

from .errors import NotFound
from .models import Category, Product

DEFAULT_RATING = 4.0


def discount_percent(price, original_price) -> int:
    """Whole-percent markdown from the list price, rounded half up."""
    if original_price is None or original_price <= price:
        return 0
    return int(math.floor(100 * (original_price - price) / original_price + 0.5))


def in_stock(product: Product) -> bool:
    return bool(product.is_active) and product.stock > 0


def average_rating(product: Product) -> float:
    if not product.reviews:
        return DEFAULT_RATING
    return sum(r.rating for r in product.reviews) / len(product.reviews)


def serialize_product(product: Product) -> dict:
    return {
        "id": product.id,
        "slug": product.slug,
        "name": product.name,
        "price": product.price,
        "original_price": product.original_price,
        "discount_percent": discount_percent(product.price, product.original_price),
        "images": list(product.images or []),
        "brand": product.brand,
        "stock": product.stock,
        "in_stock": in_stock(product),
        "is_active": product.is_active,
        "is_featured": product.is_featured,
    }


def serialize_product_detail(product: Product) -> dict:
    data = serialize_product(product)
    data["description"] = product.description
    data["specifications"] = {
        key.replace("_", " "): str(value) for key, value in (product.specifications or {}).items()
    }
    data["category"] = (
        {"name": product.category.name, "slug": product.category.slug} if product.category else None
    )
    data["rating"] = round(average_rating(product), 1)
    data["reviews"] = [
        {
            "id": r.id,
            "rating": r.rating,
            "comment": r.comment,
            "created_at": r.created_at.isoformat(),
        }
        for r in product.reviews
    ]
    return data


def list_products(
    db: Session,
    featured: Optional[bool] = None,
    category_slug: Optional[str] = None,
    search: Optional[str] = None,
) -> List[Product]:
    query = db.query(Product).filter(Product.is_active.is_(True))
    if featured is not None:
        query = query.filter(Product.is_featured.is_(featured))
    if category_slug:
        query = query.join(Category, Product.category_id == Category.id).filter(Category.slug == category_slug)
    if search:
        query = query.filter(Product.name.ilike(f"%{search}%"))
    return query.order_by(Product.created_at.desc()).all()


def get_product_by_slug(db: Session, slug: str) -> Product:
    product = (
        db.query(Product)
        .options(joinedload(Product.category), selectinload(Product.reviews))
        .filter(Product.slug == slug)
        .first()
    )
    if product is None:
        raise NotFound("Product not found")
    return product


def get_product(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFound("Product not found")
    return product


def list_categories(db: Session) -> List[Category]:
    return db.query(Category).order_by(Category.name).all()


def get_category(db: Session, slug: str) -> Category:
    category = db.query(Category).filter(Category.slug == slug).first()
    if category is None:
        raise NotFound("Category not found")
    return category
