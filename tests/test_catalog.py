from catalog import effective_price, recalculate_rating, recalculate_total_stock


def product_payload(category, **overrides):
    payload = {
        "name": "Zip Hoodie",
        "description": "Midweight zip hoodie",
        "price": 65.0,
        "category": str(category["_id"]),
        "variants": [
            {"size": "S", "color": "Navy", "stock": 4, "sku": "ZH-S-NVY"},
            {"size": "M", "color": "Navy", "stock": 6, "sku": "ZH-M-NVY"},
        ],
    }
    payload.update(overrides)
    return payload


def test_total_stock_helper_accepts_dicts():
    assert recalculate_total_stock([{"stock": 2}, {"stock": 3}, {}]) == 5
    assert recalculate_total_stock([]) == 0


def test_rating_of_no_reviews_is_zero():
    assert recalculate_rating([]) == (0.0, 0)
    assert recalculate_rating([{"rating": 5}, {"rating": 4}, {"rating": 4}]) == (4.33, 3)


def test_effective_price_order():
    assert effective_price({"price": 50.0}) == 50.0
    assert effective_price({"price": 50.0, "discount_price": 45.0}) == 45.0
    assert effective_price({"price": 50.0, "discount_price": 45.0, "on_sale": True, "sale_price": 30.0}) == 30.0
    assert effective_price({"price": 50.0, "on_sale": False, "sale_price": 30.0}) == 50.0


def test_create_product_sets_derived_fields(client, category, admin_headers):
    res = client.post("/api/products", json=product_payload(category), headers=admin_headers)
    assert res.status_code == 201
    product = res.json()["product"]
    assert product["total_stock"] == 10
    assert product["rating"] == 0.0
    assert product["num_reviews"] == 0
    assert product["status"] == "active"


def test_create_product_requires_admin(client, category, customer_headers):
    res = client.post("/api/products", json=product_payload(category), headers=customer_headers)
    assert res.status_code == 403


def test_create_product_rejects_unknown_category(client, admin_headers):
    res = client.post(
        "/api/products", json=product_payload({"_id": "64b7f0c2a1b2c3d4e5f60718"}), headers=admin_headers
    )
    assert res.status_code == 400
    assert res.json()["message"] == "Category not found"


def test_duplicate_skus_in_payload_rejected(client, category, admin_headers):
    variants = [
        {"size": "S", "color": "Navy", "stock": 1, "sku": "DUP-1"},
        {"size": "M", "color": "Navy", "stock": 1, "sku": "DUP-1"},
    ]
    res = client.post("/api/products", json=product_payload(category, variants=variants), headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Duplicate SKUs found in variants"


def test_sku_taken_by_another_product_rejected(client, product, category, admin_headers):
    variants = [{"size": "S", "color": "Navy", "stock": 1, "sku": "TEE-M-BLK"}]
    res = client.post("/api/products", json=product_payload(category, variants=variants), headers=admin_headers)
    assert res.status_code == 400
    assert "TEE-M-BLK" in res.json()["message"]


def test_product_needs_a_variant(client, category, admin_headers):
    res = client.post("/api/products", json=product_payload(category, variants=[]), headers=admin_headers)
    assert res.status_code == 400


def test_updating_variants_recomputes_total_stock(client, product, admin_headers):
    variants = [
        {"size": "M", "color": "Black", "stock": 7, "sku": "TEE-M-BLK"},
        {"size": "XL", "color": "Black", "stock": 2},
    ]
    res = client.put(f"/api/products/{product['_id']}", json={"variants": variants}, headers=admin_headers)
    assert res.status_code == 200
    updated = res.json()["product"]
    assert updated["total_stock"] == 9
    assert "sku" not in updated["variants"][1]


def test_partial_update_keeps_other_fields(client, product, admin_headers):
    res = client.put(f"/api/products/{product['_id']}", json={"price": 55.0}, headers=admin_headers)
    updated = res.json()["product"]
    assert updated["price"] == 55.0
    assert updated["name"] == "Classic Tee"
    assert updated["total_stock"] == 8


def test_archive_restore_and_permanent_delete(client, product, admin_headers):
    pid = str(product["_id"])

    res = client.delete(f"/api/products/{pid}", headers=admin_headers)
    assert res.json()["status"] == "archived"
    assert client.get(f"/api/products/{pid}").status_code == 404
    assert client.get(f"/api/products/{pid}", headers=admin_headers).status_code == 200
    assert client.get("/api/products").json()["pagination"]["total"] == 0
    archived = client.get("/api/products", params={"status": "archived"}, headers=admin_headers).json()
    assert [p["id"] for p in archived["products"]] == [pid]

    res = client.put(f"/api/products/{pid}/restore", headers=admin_headers)
    assert res.json()["product"]["status"] == "active"
    assert client.get(f"/api/products/{pid}").status_code == 200

    res = client.delete(f"/api/products/{pid}/permanent", headers=admin_headers)
    assert res.json()["status"] == "deleted"
    assert client.get(f"/api/products/{pid}", headers=admin_headers).status_code == 404


def test_listing_hides_reviews_and_filters(client, product):
    body = client.get("/api/products", params={"size": "L", "in_stock": True}).json()
    assert body["pagination"]["total"] == 1
    assert "reviews" not in body["products"][0]
    assert client.get("/api/products", params={"size": "XS"}).json()["pagination"]["total"] == 0
    assert client.get("/api/products", params={"search": "cotton"}).json()["pagination"]["total"] == 1


def test_price_range_filter(client, product):
    assert client.get("/api/products", params={"price_range": "40-60"}).json()["pagination"]["total"] == 1
    assert client.get("/api/products", params={"price_range": "60-+"}).json()["pagination"]["total"] == 0
    assert client.get("/api/products", params={"price_range": "cheap"}).status_code == 400


def test_reviews_keep_rating_in_sync(client, product, customer_headers, user_factory, auth_headers):
    pid = str(product["_id"])
    res = client.post(f"/api/products/{pid}/reviews", json={"rating": 5, "comment": "Great"}, headers=customer_headers)
    assert res.status_code == 201
    review_id = res.json()["review"]["id"]

    other = user_factory("other@example.com", name="Other Buyer")
    res = client.post(f"/api/products/{pid}/reviews", json={"rating": 2, "comment": "Meh"}, headers=auth_headers(other))
    assert (res.json()["rating"], res.json()["num_reviews"]) == (3.5, 2)

    res = client.post(f"/api/products/{pid}/reviews", json={"rating": 1, "comment": "Again"}, headers=customer_headers)
    assert res.status_code == 400

    res = client.delete(f"/api/products/{pid}/reviews/{review_id}", headers=auth_headers(other))
    assert res.status_code == 403

    res = client.delete(f"/api/products/{pid}/reviews/{review_id}", headers=customer_headers)
    assert (res.json()["rating"], res.json()["num_reviews"]) == (2.0, 1)
    product_doc = client.get(f"/api/products/{pid}").json()["product"]
    assert product_doc["rating"] == 2.0
    assert len(product_doc["reviews"]) == 1


def test_deleting_last_review_resets_rating(client, product, customer_headers):
    pid = str(product["_id"])
    review_id = client.post(
        f"/api/products/{pid}/reviews", json={"rating": 4, "comment": "Nice"}, headers=customer_headers
    ).json()["review"]["id"]
    res = client.delete(f"/api/products/{pid}/reviews/{review_id}", headers=customer_headers)
    assert (res.json()["rating"], res.json()["num_reviews"]) == (0.0, 0)


def test_review_rating_bounds(client, product, customer_headers):
    res = client.post(
        f"/api/products/{product['_id']}/reviews", json={"rating": 6, "comment": "Too good"}, headers=customer_headers
    )
    assert res.status_code == 400


def test_malformed_id_is_not_found(client):
    res = client.get("/api/products/not-an-id")
    assert res.status_code == 404
    assert res.json()["message"] == "Resource not found - Invalid id"


def test_bulk_deactivate(client, product, admin_headers):
    res = client.post(
        "/api/products/bulk-action",
        json={"action": "deactivate", "product_ids": [str(product["_id"])]},
        headers=admin_headers,
    )
    assert res.json()["modified_count"] == 1
    assert client.get(f"/api/products/{product['_id']}").status_code == 404


def test_search_matches_punctuation_literally(client, product):
    res = client.get("/api/products", params={"search": "tee("})
    assert res.status_code == 200
    assert res.json()["pagination"]["total"] == 0
    assert client.get("/api/products", params={"search": "c.assic"}).json()["pagination"]["total"] == 0
    assert client.get("/api/products", params={"search": "classic"}).json()["pagination"]["total"] == 1


def test_repeated_size_and_color_rejected(client, category, product, admin_headers):
    variants = [
        {"size": "M", "color": "Navy", "stock": 2, "sku": "ZH-M-NVY-1"},
        {"size": "M", "color": "Navy", "stock": 3, "sku": "ZH-M-NVY-2"},
    ]
    res = client.post("/api/products", json=product_payload(category, variants=variants), headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Duplicate size and color combinations found in variants"

    variants = [{"size": "M", "color": "Black", "stock": 1}, {"size": "M", "color": "Black", "stock": 1}]
    res = client.put(f"/api/products/{product['_id']}", json={"variants": variants}, headers=admin_headers)
    assert res.status_code == 400
    assert client.get(f"/api/products/{product['_id']}").json()["product"]["total_stock"] == 8


def test_product_detail_fields_round_trip(client, category, admin_headers):
    payload = product_payload(
        category,
        subcategory="Graphic",
        fabric="80% cotton, 20% polyester",
        care_instructions="Machine wash cold",
        measurements={"chest": 52.5, "waist": 48, "hip": 50, "length": 70},
        seo_title="Zip Hoodie | Midweight",
        seo_description="A midweight zip hoodie for everyday wear",
    )
    product = client.post("/api/products", json=payload, headers=admin_headers).json()["product"]
    assert product["subcategory"] == "Graphic"
    assert product["fabric"] == "80% cotton, 20% polyester"
    assert product["care_instructions"] == "Machine wash cold"
    assert product["measurements"] == {"chest": 52.5, "waist": 48.0, "hip": 50.0, "length": 70.0}
    assert product["seo_title"] == "Zip Hoodie | Midweight"

    found = client.get("/api/products", params={"search": "graphic"}).json()
    assert [p["id"] for p in found["products"]] == [product["id"]]

    res = client.put(
        f"/api/products/{product['id']}",
        json={"subcategory": None, "measurements": {"chest": 54}},
        headers=admin_headers,
    )
    updated = res.json()["product"]
    assert updated["subcategory"] is None
    assert updated["measurements"]["chest"] == 54.0
    assert updated["fabric"] == "80% cotton, 20% polyester"


def test_negative_measurement_rejected(client, category, admin_headers):
    res = client.post(
        "/api/products", json=product_payload(category, measurements={"chest": -1}), headers=admin_headers
    )
    assert res.status_code == 400
