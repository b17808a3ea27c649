import json

import db
from attribution import ensure_link
from catalog_api import slugify, parse_tags
from conftest import fetch


def test_slugify_and_tags():
    assert slugify("  Koala Care: The Guide! ") == "koala-care-the-guide"
    assert parse_tags("eucalyptus, , care ,guide") == ["eucalyptus", "care", "guide"]
    assert parse_tags(None) == []


def test_home_lists_featured_first(client, seller, make_product):
    make_product(seller, name="Plain Item", created_at=2000)
    make_product(seller, name="Star Item", featured=1, created_at=1000)
    make_product(seller, name="Hidden Item", is_active=0)
    r = client.get("/")
    assert r.status_code == 200
    body = r.data.decode()
    assert body.index("Star Item") < body.index("Plain Item")
    assert "Hidden Item" not in body


def test_product_listing_search_type_and_paging(client, seller, make_product):
    for i in range(14):
        make_product(seller, name=f"Guide {i:02d}", created_at=1000 + i)
    make_product(seller, name="Koala Plush", product_type="physical", created_at=5000)

    r = client.get("/products")
    assert b"15 products" in r.data
    assert b"Page 1 of 2" in r.data
    assert b"Koala Plush" in r.data

    r = client.get("/products?page=2")
    assert b"Guide 00" in r.data and b"Koala Plush" not in r.data

    r = client.get("/products?search=plush")
    assert b"1 product<" in r.data and b"Koala Plush" in r.data

    r = client.get("/products?type=physical")
    assert b"Koala Plush" in r.data and b"Guide 01" not in r.data

    assert client.get("/products?page=abc").status_code == 200


def test_product_detail_shows_sale_price_and_404s_inactive(client, seller, make_product):
    p = make_product(seller, name="Bundle", base_price=50, sale_price=35)
    r = client.get(f"/products/{p['id']}")
    assert r.status_code == 200
    assert b"$35.00" in r.data and b"<s>$50.00</s>" in r.data
    assert b"Sam Seller" in r.data

    hidden = make_product(seller, name="Retired", is_active=0)
    assert client.get(f"/products/{hidden['id']}").status_code == 404
    assert client.get("/products/9999").status_code == 404


def test_referral_click_counted_once_per_session(client, app, seller, promoter, make_product, make_affiliate):
    p = make_product(seller)
    a = make_affiliate(promoter, seller)
    with db.conn() as cx:
        link = ensure_link(cx, a["id"], p["id"], promoter["id"])
    code = link["tracking_code"]

    r = client.get(f"/products/{p['id']}?ref={code}")
    assert f"/checkout/{p['id']}?ref={code}".encode() in r.data
    client.get(f"/products/{p['id']}?ref={code}")
    assert fetch("SELECT clicks FROM affiliate_links WHERE id=?", (link["id"],))["clicks"] == 1
    assert fetch("SELECT total_clicks FROM affiliates WHERE id=?", (a["id"],))["total_clicks"] == 1

    # the code is remembered for this product without the query string
    r = client.get(f"/products/{p['id']}")
    assert f"?ref={code}".encode() in r.data

    # a second browser is a second click
    app.test_client().get(f"/products/{p['id']}?ref={code}")
    assert fetch("SELECT clicks FROM affiliate_links WHERE id=?", (link["id"],))["clicks"] == 2
    assert fetch("SELECT COUNT(DISTINCT visitor_key) AS n FROM affiliate_clicks")["n"] == 2


def test_remembered_refs_are_capped(client, seller, promoter, make_product, make_affiliate, monkeypatch):
    import catalog_api
    monkeypatch.setattr(catalog_api, "_REF_MEMORY", 2)
    a = make_affiliate(promoter, seller)
    products = [make_product(seller, name=f"Item {i}") for i in range(3)]
    with db.conn() as cx:
        codes = [ensure_link(cx, a["id"], p["id"], promoter["id"])["tracking_code"] for p in products]

    for p, code in zip(products, codes):
        client.get(f"/products/{p['id']}?ref={code}")
    # revisiting keeps a single entry per product
    client.get(f"/products/{products[2]['id']}?ref={codes[2]}")

    with client.session_transaction() as s:
        assert s["refs"] == [[products[1]["id"], codes[1]], [products[2]["id"], codes[2]]]
    assert f"?ref={codes[0]}".encode() not in client.get(f"/products/{products[0]['id']}").data
    assert f"?ref={codes[1]}".encode() in client.get(f"/products/{products[1]['id']}").data


def test_unknown_or_foreign_ref_is_ignored(client, seller, promoter, make_product, make_affiliate):
    p = make_product(seller)
    other = make_product(seller, name="Other")
    a = make_affiliate(promoter, seller)
    with db.conn() as cx:
        link = ensure_link(cx, a["id"], other["id"], promoter["id"])

    r = client.get(f"/products/{p['id']}?ref=bogus")
    assert r.status_code == 200
    client.get(f"/products/{p['id']}?ref={link['tracking_code']}")
    assert fetch("SELECT COUNT(*) AS n FROM affiliate_clicks")["n"] == 0
    with client.session_transaction() as s:
        assert not s.get("refs")


def test_seller_pages_require_admin(client, promoter, login, database):
    assert client.get("/admin/products").status_code == 302
    login(client, promoter)
    r = client.get("/admin/products/new")
    assert r.status_code == 302 and r.headers["Location"].endswith("/dashboard")


def test_create_product(client, seller, login):
    login(client, seller)
    assert client.get("/admin/products/new").status_code == 200

    r = client.post("/admin/products/new", data={"name": "", "basePrice": "10"})
    assert r.status_code == 400 and b"Name and valid price are required" in r.data
    r = client.post("/admin/products/new", data={"name": "Thing", "basePrice": "-3"})
    assert r.status_code == 400

    r = client.post("/admin/products/new", data={
        "name": "Koala Field Guide", "basePrice": "19.999", "productType": "physical",
        "pricingType": "subscription", "tags": "koalas, guides", "shortDescription": "Pocket edition",
        "downloadUrl": "https://files.test/kfg.pdf",
    })
    assert r.status_code == 302
    pid = int(r.headers["Location"].split("/")[-2])
    assert r.headers["Location"].endswith(f"/admin/products/{pid}/edit?created=true")

    p = fetch("SELECT * FROM products WHERE id=?", (pid,))
    assert p["admin_id"] == seller["id"]
    assert p["slug"] == "koala-field-guide"
    assert p["base_price"] == 20.0
    assert p["product_type"] == "physical" and p["pricing_type"] == "subscription"
    assert json.loads(p["tags_json"]) == ["koalas", "guides"]
    assert p["is_active"] == 1

    r = client.get(f"/admin/products/{pid}/edit?created=true")
    assert b"Product created" in r.data


def test_edit_product(client, seller, login, make_product):
    p = make_product(seller, name="Old Name", base_price=30)
    login(client, seller)
    form = {"name": "New Name", "base_price": "30", "sale_price": "25", "product_type": "digital",
            "pricing_type": "one_time", "tags": "a, b", "is_active": "on", "featured": "on"}
    r = client.post(f"/admin/products/{p['id']}/edit", data=form)
    assert r.headers["Location"].endswith(f"/admin/products/{p['id']}")
    row = fetch("SELECT * FROM products WHERE id=?", (p["id"],))
    assert row["name"] == "New Name" and row["sale_price"] == 25.0
    assert row["featured"] == 1 and row["is_active"] == 1

    r = client.post(f"/admin/products/{p['id']}/edit", data=dict(form, sale_price="40"))
    assert r.status_code == 400 and b"Sale price must be below the base price" in r.data

    # unchecked boxes deactivate
    client.post(f"/admin/products/{p['id']}/edit", data={"name": "New Name", "base_price": "30"})
    row = fetch("SELECT * FROM products WHERE id=?", (p["id"],))
    assert row["is_active"] == 0 and row["featured"] == 0 and row["sale_price"] is None


def test_product_detail_for_seller(client, seller, promoter, login, make_product, make_affiliate):
    p = make_product(seller)
    a = make_affiliate(promoter, seller)
    with db.conn() as cx:
        ensure_link(cx, a["id"], p["id"], promoter["id"])
    login(client, seller)
    r = client.get(f"/admin/products/{p['id']}")
    assert r.status_code == 200
    assert b"Ada Affiliate" in r.data


def test_seller_cannot_touch_other_sellers_products(client, seller, make_user, make_product, login):
    p = make_product(seller)
    rival = make_user("rival@shop.test", role="admin")
    login(client, rival)
    assert client.get(f"/admin/products/{p['id']}").status_code == 404
    assert client.post(f"/admin/products/{p['id']}/edit", data={"intent": "delete"}).status_code == 404
    assert fetch("SELECT COUNT(*) AS n FROM products")["n"] == 1


def test_delete_product(client, seller, login, make_product):
    p = make_product(seller)
    login(client, seller)
    r = client.post(f"/admin/products/{p['id']}/edit", data={"intent": "delete"})
    assert r.headers["Location"].endswith("/admin/products")
    assert fetch("SELECT COUNT(*) AS n FROM products")["n"] == 0


def test_categories(client, seller, login):
    login(client, seller)
    r = client.post("/admin/categories", data={"intent": "create", "name": "E-Books"})
    assert r.status_code == 302
    c = fetch("SELECT * FROM categories")
    assert c["slug"] == "e-books" and c["is_active"] == 1

    r = client.post("/admin/categories", data={"intent": "create", "name": "e books"})
    assert r.status_code == 400 and b"A category with this name already exists" in r.data
    r = client.post("/admin/categories", data={"intent": "create", "name": " "})
    assert r.status_code == 400 and b"Category name is required" in r.data

    client.post("/admin/categories", data={"intent": "toggle", "categoryId": str(c["id"]), "isActive": "false"})
    assert fetch("SELECT is_active FROM categories")["is_active"] == 0
    # hidden categories are not offered on the product form
    assert b"E-Books" not in client.get("/admin/products/new").data

    r = client.post("/admin/categories", data={"intent": "rename"})
    assert r.status_code == 400 and b"Invalid action" in r.data

    client.post("/admin/categories", data={"intent": "delete", "categoryId": str(c["id"])})
    assert fetch("SELECT COUNT(*) AS n FROM categories")["n"] == 0
