# affiliates_api.py
import time, logging
from urllib.parse import urlencode
from flask import Blueprint, request, render_template, redirect, Response, abort, current_app

from db import conn
from auth import require_role, current_user_row
from attribution import ensure_link
from orders import set_commission_status, OrderStateError
from payments import percent_to_rate, rate_to_percent, DEFAULT_COMMISSION_RATE
from emailer import send_affiliate_invite

bp = Blueprint("affiliates", __name__)
log = logging.getLogger(__name__)

def _now() -> int: return int(time.time())

def share_url(product_id: int, code: str) -> str:
    return f"{current_app.config['APP_BASE_URL']}/products/{product_id}?ref={code}"

# ----------------- SELLER: AFFILIATE LIST -----------------
@bp.get("/admin/affiliates")
def admin_affiliates():
    u = require_role("admin")
    if isinstance(u, Response): return u
    with conn() as cx:
        rows = cx.execute(
            """SELECT a.*, p.full_name, p.email, p.password_hash IS NOT NULL AS registered,
                      (SELECT COUNT(*) FROM affiliate_links l WHERE l.affiliate_id=a.id) AS link_count
               FROM affiliates a JOIN users p ON p.id = a.profile_id
               WHERE a.admin_id=?
               ORDER BY a.created_at DESC""",
            (u["id"],)
        ).fetchall()
    stats = {
        "total": len(rows),
        "active": sum(1 for r in rows if r["is_active"]),
        "earnings": round(sum(float(r["total_earnings"] or 0) for r in rows), 2),
        "clicks": sum(int(r["total_clicks"] or 0) for r in rows),
        "sales": sum(int(r["total_sales"] or 0) for r in rows),
    }
    return render_template("admin_affiliates.html", affiliates=rows, stats=stats)

# ----------------- SELLER: ADD AFFILIATE -----------------
@bp.route("/admin/affiliates/new", methods=["GET", "POST"])
def admin_affiliate_new():
    u = require_role("admin")
    if isinstance(u, Response): return u
    default_pct = rate_to_percent(DEFAULT_COMMISSION_RATE)
    if request.method == "GET":
        return render_template("admin_affiliate_new.html", form={"commissionRate": default_pct})

    f = request.form
    email = (f.get("email") or "").strip().lower()
    full_name = (f.get("fullName") or "").strip()
    rate = percent_to_rate(f.get("commissionRate") or default_pct)

    def _fail(msg):
        return render_template("admin_affiliate_new.html", form=f, error=msg), 400

    if not email or "@" not in email or not full_name:
        return _fail("Email and full name are required")
    if rate is None:
        return _fail("Commission rate must be a number between 0 and 100")

    now = _now()
    invite = False
    with conn() as cx:
        profile = cx.execute("SELECT * FROM users WHERE email=?", (email,)).fetchone()
        if profile:
            if profile["id"] == u["id"]:
                return _fail("You cannot add yourself as an affiliate")
            exists = cx.execute(
                "SELECT 1 FROM affiliates WHERE profile_id=? AND admin_id=?",
                (profile["id"], u["id"])
            ).fetchone()
            if exists:
                return _fail("This user is already your affiliate")
            if profile["role"] in (None, "buyer"):
                cx.execute("UPDATE users SET role='affiliate', updated_at=? WHERE id=?", (now, profile["id"]))
            invite = not profile["password_hash"]
            profile_id = profile["id"]
        else:
            # placeholder account, claimed when the invitee registers with this email
            cur = cx.execute(
                """INSERT INTO users(email, password_hash, full_name, role, created_at, updated_at)
                   VALUES(?,NULL,?,'affiliate',?,?)""",
                (email, full_name, now, now)
            )
            profile_id = cur.lastrowid
            invite = True
        cur = cx.execute(
            """INSERT INTO affiliates(profile_id, admin_id, commission_rate, notes, is_active, created_at, updated_at)
               VALUES(?,?,?,?,1,?,?)""",
            (profile_id, u["id"], rate, (f.get("notes") or "").strip() or None, now, now)
        )
        affiliate_id = cur.lastrowid
    log.info("AFFILIATE_ADDED id=%s admin=%s profile=%s rate=%s", affiliate_id, u["id"], profile_id, rate)

    if invite:
        register_url = f"{current_app.config['APP_BASE_URL']}/register?{urlencode({'email': email})}"
        sent = send_affiliate_invite(email, full_name, u["full_name"] or u["email"],
                                     rate_to_percent(rate), register_url)
        log.info("AFFILIATE_INVITE affiliate=%s sent=%s", affiliate_id, sent)
    return redirect("/admin/affiliates")

# ----------------- SELLER: AFFILIATE DETAIL -----------------
def _own_affiliate(cx, affiliate_id: int, admin_id: int):
    a = cx.execute(
        """SELECT a.*, p.full_name, p.email, p.phone, p.website, p.password_hash IS NOT NULL AS registered
           FROM affiliates a JOIN users p ON p.id = a.profile_id
           WHERE a.id=? AND a.admin_id=?""",
        (affiliate_id, admin_id)
    ).fetchone()
    if not a:
        abort(404)
    return a

def _detail_page(u, affiliate_id: int, error=None, status=200):
    with conn() as cx:
        a = _own_affiliate(cx, affiliate_id, u["id"])
        links = cx.execute(
            """SELECT l.*, pr.name AS product_name
               FROM affiliate_links l JOIN products pr ON pr.id = l.product_id
               WHERE l.affiliate_id=? ORDER BY l.created_at DESC""",
            (affiliate_id,)
        ).fetchall()
        commissions = cx.execute(
            """SELECT c.*, o.customer_email, o.amount AS order_amount, pr.name AS product_name
               FROM commissions c
               JOIN orders o ON o.id = c.order_id
               LEFT JOIN products pr ON pr.id = o.product_id
               WHERE c.affiliate_id=?
               ORDER BY c.created_at DESC LIMIT 50""",
            (affiliate_id,)
        ).fetchall()
        unlinked = cx.execute(
            """SELECT id, name FROM products
               WHERE admin_id=? AND id NOT IN (SELECT product_id FROM affiliate_links WHERE affiliate_id=?)
               ORDER BY name""",
            (u["id"], affiliate_id)
        ).fetchall()
        owed = cx.execute(
            """SELECT COALESCE(SUM(CASE WHEN status IN ('pending','approved') THEN amount END), 0) AS unpaid,
                      COALESCE(SUM(CASE WHEN status='paid' THEN amount END), 0) AS paid
               FROM commissions WHERE affiliate_id=?""",
            (affiliate_id,)
        ).fetchone()
    share = {l["id"]: share_url(l["product_id"], l["tracking_code"]) for l in links}
    conv = (a["total_sales"] / a["total_clicks"] * 100) if a["total_clicks"] else 0.0
    return render_template("admin_affiliate.html", a=a, links=links, share=share, commissions=commissions,
                           unlinked=unlinked, owed=owed, conversion_rate=conv,
                           rate_percent=rate_to_percent(a["commission_rate"]), error=error), status

@bp.route("/admin/affiliates/<int:affiliate_id>", methods=["GET", "POST"])
def admin_affiliate_detail(affiliate_id):
    u = require_role("admin")
    if isinstance(u, Response): return u
    if request.method == "GET":
        return _detail_page(u, affiliate_id)

    f = request.form
    intent = f.get("intent")
    now = _now()
    with conn() as cx:
        _own_affiliate(cx, affiliate_id, u["id"])

    if intent == "update":
        rate = percent_to_rate(f.get("commissionRate"))
        if rate is None:
            return _detail_page(u, affiliate_id, "Commission rate must be a number between 0 and 100", 400)
        with conn() as cx:
            cx.execute(
                "UPDATE affiliates SET commission_rate=?, notes=?, updated_at=? WHERE id=? AND admin_id=?",
                (rate, (f.get("notes") or "").strip() or None, now, affiliate_id, u["id"])
            )
        log.info("AFFILIATE_UPDATED id=%s rate=%s", affiliate_id, rate)

    elif intent == "toggle-status":
        active = 1 if (f.get("isActive") or "").lower() == "true" else 0
        with conn() as cx:
            cx.execute(
                "UPDATE affiliates SET is_active=?, updated_at=? WHERE id=? AND admin_id=?",
                (active, now, affiliate_id, u["id"])
            )
        log.info("AFFILIATE_STATUS id=%s active=%s", affiliate_id, active)

    elif intent == "delete":
        with conn() as cx:
            cx.execute("DELETE FROM affiliates WHERE id=? AND admin_id=?", (affiliate_id, u["id"]))
        log.info("AFFILIATE_DELETED id=%s admin=%s", affiliate_id, u["id"])
        return redirect("/admin/affiliates")

    elif intent == "add-link":
        try:
            product_id = int(f.get("productId") or 0)
        except ValueError:
            product_id = 0
        with conn() as cx:
            p = cx.execute("SELECT id FROM products WHERE id=? AND admin_id=?", (product_id, u["id"])).fetchone()
            if p:
                a = cx.execute("SELECT profile_id FROM affiliates WHERE id=?", (affiliate_id,)).fetchone()
                ensure_link(cx, affiliate_id, product_id, a["profile_id"])
        if not p:
            return _detail_page(u, affiliate_id, "Choose one of your products", 400)

    elif intent in ("approve-commission", "pay-commission"):
        try:
            commission_id = int(f.get("commissionId") or 0)
        except ValueError:
            commission_id = 0
        target = "approved" if intent == "approve-commission" else "paid"
        try:
            set_commission_status(commission_id, u["id"], target)
        except OrderStateError as e:
            return _detail_page(u, affiliate_id, str(e), 400)

    else:
        return _detail_page(u, affiliate_id, "Invalid action", 400)

    return redirect(f"/admin/affiliates/{affiliate_id}")

# ----------------- APPLY -----------------
@bp.route("/affiliate/apply/<int:product_id>", methods=["GET", "POST"])
def affiliate_apply(product_id):
    u = current_user_row()
    with conn() as cx:
        p = cx.execute(
            """SELECT p.*, s.full_name AS seller_name FROM products p
               LEFT JOIN users s ON s.id = p.admin_id
               WHERE p.id=? AND p.is_active=1""",
            (product_id,)
        ).fetchone()
    if not p:
        abort(404)
    default_pct = rate_to_percent(DEFAULT_COMMISSION_RATE)

    if request.method == "GET":
        form = {"name": (u["full_name"] or "") if u else "", "email": u["email"] if u else ""}
        return render_template("affiliate_apply.html", p=p, form=form, rate_percent=default_pct)

    f = request.form
    def _fail(msg, status=400):
        return render_template("affiliate_apply.html", p=p, form=f, rate_percent=default_pct, error=msg), status

    if not u:
        return _fail("You must be logged in to apply as an affiliate", 401)
    name = (f.get("name") or "").strip()
    email = (f.get("email") or "").strip()
    experience = (f.get("experience") or "").strip()
    motivation = (f.get("motivation") or "").strip()
    if not (name and email and experience and motivation):
        return _fail("Please fill in all required fields")
    if p["admin_id"] == u["id"]:
        return _fail("You cannot promote your own product as an affiliate")

    now = _now()
    website = (f.get("website") or "").strip()
    notes = f"Experience: {experience}\nMotivation: {motivation}" + (f"\nWebsite: {website}" if website else "")
    with conn() as cx:
        a = cx.execute(
            "SELECT * FROM affiliates WHERE profile_id=? AND admin_id=?",
            (u["id"], p["admin_id"])
        ).fetchone()
        if a:
            has_link = cx.execute(
                "SELECT 1 FROM affiliate_links WHERE affiliate_id=? AND product_id=?",
                (a["id"], product_id)
            ).fetchone()
            if has_link:
                return _fail("You are already an affiliate for this product")
            affiliate_id = a["id"]
        else:
            cur = cx.execute(
                """INSERT INTO affiliates(profile_id, admin_id, commission_rate, notes, is_active, created_at, updated_at)
                   VALUES(?,?,?,?,1,?,?)""",
                (u["id"], p["admin_id"], float(DEFAULT_COMMISSION_RATE), notes, now, now)
            )
            affiliate_id = cur.lastrowid
        link = ensure_link(cx, affiliate_id, product_id, u["id"])
        if u["role"] in (None, "buyer"):
            cx.execute("UPDATE users SET role='affiliate', updated_at=? WHERE id=?", (now, u["id"]))
        if website and not u["website"]:
            cx.execute("UPDATE users SET website=? WHERE id=?", (website, u["id"]))
    log.info("AFFILIATE_APPLIED user=%s product=%s affiliate=%s code=%s",
             u["id"], product_id, affiliate_id, link["tracking_code"])
    return redirect("/affiliate/dashboard")

# ----------------- AFFILIATE DASHBOARD -----------------
@bp.get("/affiliate/dashboard")
def affiliate_dashboard():
    u = require_role("affiliate")
    if isinstance(u, Response): return u
    with conn() as cx:
        accounts = cx.execute(
            """SELECT a.*, s.full_name AS seller_name, s.email AS seller_email
               FROM affiliates a JOIN users s ON s.id = a.admin_id
               WHERE a.profile_id=? ORDER BY a.created_at""",
            (u["id"],)
        ).fetchall()
        links = cx.execute(
            """SELECT l.*, pr.name AS product_name, pr.base_price, pr.sale_price, pr.currency,
                      a.commission_rate, a.is_active AS affiliate_active
               FROM affiliate_links l
               JOIN affiliates a ON a.id = l.affiliate_id
               JOIN products pr ON pr.id = l.product_id
               WHERE a.profile_id=?
               ORDER BY l.created_at DESC""",
            (u["id"],)
        ).fetchall()
        recent = cx.execute(
            """SELECT c.*, pr.name AS product_name
               FROM commissions c
               JOIN affiliates a ON a.id = c.affiliate_id
               JOIN orders o ON o.id = c.order_id
               LEFT JOIN products pr ON pr.id = o.product_id
               WHERE a.profile_id=?
               ORDER BY c.created_at DESC LIMIT 10""",
            (u["id"],)
        ).fetchall()
        owed = cx.execute(
            """SELECT COALESCE(SUM(CASE WHEN c.status IN ('pending','approved') THEN c.amount END), 0) AS unpaid,
                      COALESCE(SUM(CASE WHEN c.status='paid' THEN c.amount END), 0) AS paid
               FROM commissions c JOIN affiliates a ON a.id = c.affiliate_id
               WHERE a.profile_id=?""",
            (u["id"],)
        ).fetchone()

    clicks = sum(int(a["total_clicks"] or 0) for a in accounts)
    sales = sum(int(a["total_sales"] or 0) for a in accounts)
    totals = {
        "earnings": round(sum(float(a["total_earnings"] or 0) for a in accounts), 2),
        "clicks": clicks,
        "sales": sales,
        "conversion_rate": (sales / clicks * 100) if clicks else 0.0,
        "unpaid": float(owed["unpaid"]),
        "paid": float(owed["paid"]),
    }
    share = {l["id"]: share_url(l["product_id"], l["tracking_code"]) for l in links}
    return render_template("affiliate_dashboard.html", accounts=accounts, links=links, share=share,
                           recent=recent, totals=totals)
