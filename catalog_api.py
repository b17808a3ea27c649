# catalog_api.py
import re, json, time, uuid, logging, sqlite3
from flask import Blueprint, request, render_template, redirect, Response, abort, session

from db import conn
from auth import require_role
from attribution import find_link, record_click
from orders import effective_price

bp = Blueprint("catalog", __name__)
log = logging.getLogger(__name__)

PAGE_SIZE = 12
FEATURED_LIMIT = 6
PRODUCT_TYPES = ("digital", "physical")
PRICING_TYPES = ("one_time", "subscription", "trial")
_CLICK_MEMORY = 100   # link ids remembered per browser session
_REF_MEMORY = 50      # [product_id, tracking code] pairs remembered for checkout

def _now() -> int: return int(time.time())

def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")

def parse_tags(raw: str) -> list[str]:
    return [t.strip() for t in (raw or "").split(",") if t.strip()]

def _float_or_none(v):
    s = (v or "").strip()
    if not s:
        return None
    try:
        return float(s)
    except ValueError:
        return None

# ----------------- REFERRALS -----------------
def track_referral(cx, product_id: int, code: str | None):
    """
    Count a click for ?ref=code on a product page, once per link per browser
    session, and remember the code for checkout. Returns the link row or None.
    """
    code = (code or "").strip()
    if not code:
        return None
    link = find_link(cx, code, product_id)
    if not link:
        log.info("AFF_REF_UNKNOWN product=%s code=%s", product_id, code)
        return None

    refs = [r for r in (session.get("refs") or []) if r[0] != product_id]
    refs.append([product_id, link["tracking_code"]])
    session["refs"] = refs[-_REF_MEMORY:]

    seen = list(session.get("clicked_links") or [])
    if link["id"] not in seen:
        visitor = session.get("visitor") or uuid.uuid4().hex
        session["visitor"] = visitor
        record_click(
            cx, link,
            visitor_key=visitor,
            ip=request.headers.get("X-Forwarded-For", request.remote_addr or "").split(",")[0].strip() or None,
            user_agent=request.headers.get("User-Agent"),
            referer=request.headers.get("Referer"),
        )
        seen.append(link["id"])
        session["clicked_links"] = seen[-_CLICK_MEMORY:]
    return link

def remembered_ref(product_id: int) -> str | None:
    for pid, code in reversed(session.get("refs") or []):
        if pid == product_id:
            return code
    return None

# ----------------- STOREFRONT -----------------
@bp.get("/")
def home():
    with conn() as cx:
        products = cx.execute(
            """SELECT * FROM products WHERE is_active=1
               ORDER BY featured DESC, created_at DESC LIMIT ?""",
            (FEATURED_LIMIT,)
        ).fetchall()
    return render_template("home.html", products=products)

@bp.get("/products")
def products():
    search = (request.args.get("search") or "").strip()
    ptype = (request.args.get("type") or "").strip().lower()
    try:
        page = max(1, int(request.args.get("page") or 1))
    except ValueError:
        page = 1

    where, args = ["p.is_active=1"], []
    if search:
        where.append("(p.name LIKE ? OR p.description LIKE ?)")
        args += [f"%{search}%", f"%{search}%"]
    if ptype in PRODUCT_TYPES:
        where.append("p.product_type=?")
        args.append(ptype)
    clause = " AND ".join(where)

    with conn() as cx:
        total = cx.execute(f"SELECT COUNT(*) AS n FROM products p WHERE {clause}", args).fetchone()["n"]
        rows = cx.execute(
            f"""SELECT p.*, c.name AS category_name
                FROM products p LEFT JOIN categories c ON c.id = p.category_id
                WHERE {clause}
                ORDER BY p.created_at DESC, p.id DESC
                LIMIT ? OFFSET ?""",
            (*args, PAGE_SIZE, (page - 1) * PAGE_SIZE)
        ).fetchall()
    pages = max(1, (total + PAGE_SIZE - 1) // PAGE_SIZE)
    return render_template("products.html", products=rows, search=search, type=ptype,
                           page=page, pages=pages, total=total)

@bp.get("/products/<int:product_id>")
def product_detail(product_id):
    with conn() as cx:
        p = cx.execute(
            """SELECT p.*, c.name AS category_name, u.full_name AS seller_name
               FROM products p
               LEFT JOIN categories c ON c.id = p.category_id
               LEFT JOIN users u ON u.id = p.admin_id
               WHERE p.id=? AND p.is_active=1""",
            (product_id,)
        ).fetchone()
        if not p:
            abort(404)
        link = track_referral(cx, product_id, request.args.get("ref"))
    tags = json.loads(p["tags_json"]) if p["tags_json"] else []
    return render_template("product.html", p=p, price=effective_price(p), tags=tags,
                           ref=(link["tracking_code"] if link else remembered_ref(product_id)))

# ----------------- SELLER: PRODUCTS -----------------
def _own_product(cx, product_id: int, admin_id: int):
    p = cx.execute("SELECT * FROM products WHERE id=? AND admin_id=?", (product_id, admin_id)).fetchone()
    if not p:
        abort(404)
    return p

def _active_categories(cx):
    return cx.execute("SELECT * FROM categories WHERE is_active=1 ORDER BY name").fetchall()

@bp.get("/admin/products")
def admin_products():
    u = require_role("admin")
    if isinstance(u, Response): return u
    with conn() as cx:
        rows = cx.execute(
            """SELECT p.*, c.name AS category_name,
                      (SELECT COUNT(*) FROM orders o WHERE o.product_id=p.id AND o.status='paid') AS sales
               FROM products p LEFT JOIN categories c ON c.id = p.category_id
               WHERE p.admin_id=?
               ORDER BY p.created_at DESC, p.id DESC""",
            (u["id"],)
        ).fetchall()
    return render_template("admin_products.html", products=rows)

@bp.route("/admin/products/new", methods=["GET", "POST"])
def admin_product_new():
    u = require_role("admin")
    if isinstance(u, Response): return u
    with conn() as cx:
        categories = _active_categories(cx)
    if request.method == "GET":
        return render_template("admin_product_new.html", categories=categories, form={})

    f = request.form
    name = (f.get("name") or "").strip()
    base_price = _float_or_none(f.get("basePrice"))
    if not name or base_price is None or base_price <= 0:
        return render_template("admin_product_new.html", categories=categories, form=f,
                               error="Name and valid price are required"), 400

    product_type = f.get("productType") if f.get("productType") in PRODUCT_TYPES else "digital"
    pricing_type = f.get("pricingType") if f.get("pricingType") in PRICING_TYPES else "one_time"
    try:
        category_id = int(f.get("categoryId") or 0) or None
    except ValueError:
        category_id = None
    now = _now()
    with conn() as cx:
        cur = cx.execute(
            """INSERT INTO products(
                 admin_id, category_id, name, slug, description, short_description,
                 product_type, pricing_type, base_price, currency, image_url, download_url,
                 tags_json, is_active, featured, created_at, updated_at
               )
               VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,1,0,?,?)""",
            (
                u["id"], category_id, name, slugify(name),
                (f.get("description") or "").strip(),
                (f.get("shortDescription") or "").strip() or None,
                product_type, pricing_type, round(base_price, 2),
                (f.get("currency") or "USD").strip().upper()[:3] or "USD",
                (f.get("imageUrl") or "").strip() or None,
                (f.get("downloadUrl") or "").strip() or None,
                json.dumps(parse_tags(f.get("tags"))), now, now,
            )
        )
        pid = cur.lastrowid
    log.info("PRODUCT_CREATED id=%s admin=%s price=%.2f", pid, u["id"], base_price)
    return redirect(f"/admin/products/{pid}/edit?created=true")

@bp.get("/admin/products/<int:product_id>")
def admin_product_detail(product_id):
    u = require_role("admin")
    if isinstance(u, Response): return u
    with conn() as cx:
        p = _own_product(cx, product_id, u["id"])
        stats = cx.execute(
            """SELECT COUNT(*) AS orders,
                      COALESCE(SUM(CASE WHEN status='paid' THEN amount END), 0) AS revenue,
                      COALESCE(SUM(CASE WHEN status='paid' THEN 1 END), 0) AS paid
               FROM orders WHERE product_id=?""",
            (product_id,)
        ).fetchone()
        links = cx.execute(
            """SELECT l.*, u.full_name AS affiliate_name, u.email AS affiliate_email
               FROM affiliate_links l
               JOIN affiliates a ON a.id = l.affiliate_id
               JOIN users u ON u.id = a.profile_id
               WHERE l.product_id=? AND a.admin_id=?
               ORDER BY l.clicks DESC""",
            (product_id, u["id"])
        ).fetchall()
        category = cx.execute("SELECT * FROM categories WHERE id=?", (p["category_id"],)).fetchone() \
            if p["category_id"] else None
    tags = json.loads(p["tags_json"]) if p["tags_json"] else []
    return render_template("admin_product.html", p=p, stats=stats, links=links, category=category, tags=tags)

@bp.route("/admin/products/<int:product_id>/edit", methods=["GET", "POST"])
def admin_product_edit(product_id):
    u = require_role("admin")
    if isinstance(u, Response): return u
    with conn() as cx:
        p = _own_product(cx, product_id, u["id"])
        categories = _active_categories(cx)

    if request.method == "GET":
        tags = ", ".join(json.loads(p["tags_json"])) if p["tags_json"] else ""
        return render_template("admin_product_edit.html", p=p, categories=categories, tags=tags,
                               created=request.args.get("created") == "true")

    f = request.form
    if f.get("intent") == "delete":
        with conn() as cx:
            cx.execute("DELETE FROM products WHERE id=? AND admin_id=?", (product_id, u["id"]))
        log.info("PRODUCT_DELETED id=%s admin=%s", product_id, u["id"])
        return redirect("/admin/products")

    name = (f.get("name") or "").strip()
    base_price = _float_or_none(f.get("base_price"))
    sale_price = _float_or_none(f.get("sale_price"))
    if not name or base_price is None or base_price <= 0:
        return render_template("admin_product_edit.html", p=p, categories=categories,
                               tags=f.get("tags") or "", error="Name and valid price are required"), 400
    if sale_price is not None and (sale_price < 0 or sale_price >= base_price):
        return render_template("admin_product_edit.html", p=p, categories=categories,
                               tags=f.get("tags") or "", error="Sale price must be below the base price"), 400
    try:
        category_id = int(f.get("category_id") or 0) or None
    except ValueError:
        category_id = None

    with conn() as cx:
        cx.execute(
            """UPDATE products SET
                 name=?, slug=?, description=?, short_description=?, category_id=?,
                 product_type=?, pricing_type=?, base_price=?, sale_price=?,
                 image_url=?, download_url=?, tags_json=?, is_active=?, featured=?, updated_at=?
               WHERE id=? AND admin_id=?""",
            (
                name, slugify(name),
                (f.get("description") or "").strip(),
                (f.get("short_description") or "").strip() or None,
                category_id,
                f.get("product_type") if f.get("product_type") in PRODUCT_TYPES else p["product_type"],
                f.get("pricing_type") if f.get("pricing_type") in PRICING_TYPES else p["pricing_type"],
                round(base_price, 2),
                round(sale_price, 2) if sale_price else None,
                (f.get("image_url") or "").strip() or None,
                (f.get("download_url") or "").strip() or None,
                json.dumps(parse_tags(f.get("tags"))),
                1 if f.get("is_active") == "on" else 0,
                1 if f.get("featured") == "on" else 0,
                _now(), product_id, u["id"],
            )
        )
    log.info("PRODUCT_UPDATED id=%s admin=%s", product_id, u["id"])
    return redirect(f"/admin/products/{product_id}")

# ----------------- SELLER: CATEGORIES -----------------
@bp.route("/admin/categories", methods=["GET", "POST"])
def admin_categories():
    u = require_role("admin")
    if isinstance(u, Response): return u

    def _page(error=None, status=200):
        with conn() as cx:
            rows = cx.execute(
                """SELECT c.*, (SELECT COUNT(*) FROM products p WHERE p.category_id=c.id) AS product_count
                   FROM categories c ORDER BY c.name"""
            ).fetchall()
        return render_template("admin_categories.html", categories=rows, error=error), status

    if request.method == "GET":
        return _page()

    f = request.form
    intent = f.get("intent")
    if intent == "create":
        name = (f.get("name") or "").strip()
        if not name:
            return _page("Category name is required", 400)
        try:
            with conn() as cx:
                cx.execute(
                    """INSERT INTO categories(name, slug, description, image_url, is_active, created_at)
                       VALUES(?,?,?,?,1,?)""",
                    (name, slugify(name), (f.get("description") or "").strip() or None,
                     (f.get("image_url") or "").strip() or None, _now())
                )
        except sqlite3.IntegrityError:
            return _page("A category with this name already exists", 400)
        log.info("CATEGORY_CREATED name=%s by=%s", name, u["id"])
        return redirect("/admin/categories")

    try:
        category_id = int(f.get("categoryId") or 0)
    except ValueError:
        category_id = 0

    if intent == "delete":
        with conn() as cx:
            cx.execute("DELETE FROM categories WHERE id=?", (category_id,))
        log.info("CATEGORY_DELETED id=%s by=%s", category_id, u["id"])
        return redirect("/admin/categories")

    if intent == "toggle":
        active = 1 if (f.get("isActive") or "").lower() == "true" else 0
        with conn() as cx:
            cx.execute("UPDATE categories SET is_active=? WHERE id=?", (active, category_id))
        return redirect("/admin/categories")

    return _page("Invalid action", 400)
