import pytest

from storefront.catalog import discount_percent


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.parametrize(
    "price, original_price, expected",
    [
        (500.0, 800.0, 38),   # 37.5 rounds half up
        (750.0, 1000.0, 25),
        (7.0, 8.0, 13),       # 12.5 rounds half up
        (999.0, None, 0),
        (2500.0, 2500.0, 0),
    ],
)
def test_discount_percent(price, original_price, expected):
    assert discount_percent(price, original_price) == expected


def test_health(client):
    assert client.get("/").json() == {"message": "Storefront service is running"}


def test_list_products_only_active_with_discount(client, db, catalog_data):
    from storefront.models import Product

    db.get(Product, catalog_data["jacket"]).is_active = False
    db.commit()

    resp = client.get("/api/v1/products")
    assert resp.status_code == 200
    slugs = {p["slug"]: p for p in resp.json()}
    assert set(slugs) == {"trail-runner", "field-watch"}
    assert slugs["trail-runner"]["discount_percent"] == 38
    assert slugs["field-watch"]["in_stock"] is False


def test_filter_products(client, catalog_data):
    featured = client.get("/api/v1/products", params={"featured": "true"}).json()
    assert [p["slug"] for p in featured] == ["trail-runner"]

    by_category = client.get("/api/v1/products", params={"category": "watches"}).json()
    assert [p["slug"] for p in by_category] == ["field-watch"]

    search = client.get("/api/v1/products", params={"q": "jack"}).json()
    assert [p["slug"] for p in search] == ["rain-jacket"]


def test_product_detail(client, catalog_data):
    resp = client.get("/api/v1/products/trail-runner")
    assert resp.status_code == 200
    data = resp.json()
    assert data["category"] == {"name": "Shoes", "slug": "shoes"}
    assert data["specifications"] == {"sole material": "rubber"}
    assert data["rating"] == 4.0
    assert data["reviews"] == []
    assert data["in_wishlist"] is False


def test_product_detail_reports_wishlist_state(client, catalog_data):
    client.post("/api/v1/wishlist/toggle", json={"product_id": catalog_data["runner"]}, headers=bearer("alice-token"))
    data = client.get("/api/v1/products/trail-runner", headers=bearer("alice-token")).json()
    assert data["in_wishlist"] is True


def test_product_detail_average_rating(client, db, catalog_data):
    from storefront.models import Review

    db.add_all([
        Review(product_id=catalog_data["runner"], user_id="u1", rating=5),
        Review(product_id=catalog_data["runner"], user_id="u2", rating=2),
    ])
    db.commit()
    data = client.get("/api/v1/products/trail-runner").json()
    assert data["rating"] == 3.5
    assert len(data["reviews"]) == 2


def test_unknown_product_is_404(client, catalog_data):
    resp = client.get("/api/v1/products/nope")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Product not found"}


def test_categories(client, catalog_data):
    assert [c["slug"] for c in client.get("/api/v1/categories").json()] == ["shoes", "watches"]
    shoes = client.get("/api/v1/categories/shoes").json()
    assert [p["slug"] for p in shoes["products"]] == ["trail-runner"]
    assert client.get("/api/v1/categories/hats").status_code == 404
