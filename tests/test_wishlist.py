def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def toggle(client, product_id, token="alice-token"):
    return client.post("/api/v1/wishlist/toggle", json={"product_id": product_id}, headers=bearer(token))


def test_toggle_adds_then_removes(client, feed, catalog_data):
    resp = toggle(client, catalog_data["runner"])
    assert resp.json() == {"in_wishlist": True, "message": "Added to wishlist"}

    resp = toggle(client, catalog_data["runner"])
    assert resp.json() == {"in_wishlist": False, "message": "Removed from wishlist"}

    assert [(table, event) for table, event, _ in feed.events] == [
        ("wishlist_items", "INSERT"),
        ("wishlist_items", "DELETE"),
    ]


def test_wishlist_listing_and_count(client, catalog_data):
    toggle(client, catalog_data["runner"])
    toggle(client, catalog_data["watch"])
    toggle(client, catalog_data["jacket"], token="bob-token")

    items = client.get("/api/v1/wishlist", headers=bearer("alice-token")).json()
    assert {p["slug"] for p in items} == {"trail-runner", "field-watch"}
    assert client.get("/api/v1/wishlist/count", headers=bearer("alice-token")).json() == {"count": 2}
    assert client.get("/api/v1/wishlist/count", headers=bearer("bob-token")).json() == {"count": 1}


def test_wishlist_requires_sign_in(client, catalog_data):
    resp = toggle(client, catalog_data["runner"], token="nobody")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Please sign in to continue", "redirect": "/auth"}


def test_toggle_unknown_product(client, catalog_data):
    assert toggle(client, "missing").status_code == 404


def test_wishlist_status(client, catalog_data):
    runner = catalog_data["runner"]
    assert client.get(f"/api/v1/wishlist/{runner}", headers=bearer("alice-token")).json() == {"in_wishlist": False}
    toggle(client, runner)
    assert client.get(f"/api/v1/wishlist/{runner}", headers=bearer("alice-token")).json() == {"in_wishlist": True}
    assert client.get(f"/api/v1/wishlist/{runner}", headers=bearer("bob-token")).json() == {"in_wishlist": False}
