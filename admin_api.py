# admin_api.py
import io, csv, time, logging
from datetime import datetime, timezone
from flask import Blueprint, request, render_template, redirect, Response, abort

from db import conn
from auth import require_role
from orders import set_status, OrderStateError, ORDER_STATUSES

bp = Blueprint("admin", __name__)
log = logging.getLogger(__name__)

DAY = 24 * 3600
PAYMENT_STATUSES = ("unpaid", "paid", "failed", "refunded")
FULFILLMENT_STATUSES = ("unfulfilled", "processing", "shipped", "delivered", "fulfilled")
EXPORT_FIELDS = ["id", "created_at", "product_name", "customer_name", "customer_email",
                 "amount", "currency", "status", "payment_status", "fulfillment_status",
                 "payment_ref", "affiliate_id", "tracking_code"]

# every query below is scoped to orders for the seller's own products
_OWN_ORDERS = """
    FROM orders o JOIN products p ON p.id = o.product_id
    WHERE p.admin_id = ?
"""

def _growth(current: float, previous: float) -> float:
    return ((current - previous) / previous * 100) if previous > 0 else 0.0

def _month_starts(now: datetime, count: int = 12):
    """First instants of the last `count` months, oldest first, UTC."""
    y, m = now.year, now.month
    out = []
    for _ in range(count):
        out.append(datetime(y, m, 1, tzinfo=timezone.utc))
        y, m = (y, m - 1) if m > 1 else (y - 1, 12)
    return list(reversed(out))

def compute_analytics(cx, admin_id: int, now: int | None = None) -> dict:
    now = int(time.time()) if now is None else int(now)
    d30, d60 = now - 30 * DAY, now - 60 * DAY

    def paid_between(start, end):
        r = cx.execute(
            f"SELECT COUNT(*) AS n, COALESCE(SUM(o.amount), 0) AS total {_OWN_ORDERS}"
            " AND o.status='paid' AND o.created_at >= ? AND o.created_at < ?",
            (admin_id, start, end)
        ).fetchone()
        return int(r["n"]), float(r["total"])

    cur_n, cur_rev = paid_between(d30, now + 1)
    prev_n, prev_rev = paid_between(d60, d30)
    tot = cx.execute(
        f"SELECT COUNT(*) AS n, COALESCE(SUM(o.amount), 0) AS total {_OWN_ORDERS} AND o.status='paid'",
        (admin_id,)
    ).fetchone()
    total_n, total_rev = int(tot["n"]), float(tot["total"])

    links = cx.execute(
        """SELECT COALESCE(SUM(l.clicks), 0) AS clicks, COALESCE(SUM(l.conversions), 0) AS conversions
           FROM affiliate_links l JOIN products p ON p.id = l.product_id
           WHERE p.admin_id=?""",
        (admin_id,)
    ).fetchone()
    clicks, conversions = int(links["clicks"]), int(links["conversions"])

    affs = cx.execute(
        "SELECT COUNT(*) AS n, COALESCE(SUM(is_active), 0) AS active FROM affiliates WHERE admin_id=?",
        (admin_id,)
    ).fetchone()

    top = cx.execute(
        f"""SELECT p.id AS product_id, p.name, COUNT(*) AS sales, SUM(o.amount) AS revenue
            {_OWN_ORDERS} AND o.status='paid'
            GROUP BY p.id ORDER BY sales DESC, revenue DESC LIMIT 5""",
        (admin_id,)
    ).fetchall()

    starts = _month_starts(datetime.fromtimestamp(now, tz=timezone.utc))
    bounds = [int(s.timestamp()) for s in starts] + [now + 1]
    monthly = []
    for i, s in enumerate(starts):
        n, rev = paid_between(bounds[i], bounds[i + 1])
        monthly.append({"month": s.strftime("%b"), "year": s.year, "revenue": round(rev, 2), "orders": n})

    recent = cx.execute(
        f"SELECT o.*, p.name AS product_name {_OWN_ORDERS} ORDER BY o.created_at DESC LIMIT 10",
        (admin_id,)
    ).fetchall()

    return {
        "metrics": {
            "current_revenue": round(cur_rev, 2),
            "revenue_growth": _growth(cur_rev, prev_rev),
            "current_order_count": cur_n,
            "order_growth": _growth(cur_n, prev_n),
            "total_revenue": round(total_rev, 2),
            "total_order_count": total_n,
            "average_order_value": round(total_rev / total_n, 2) if total_n else 0.0,
            "total_clicks": clicks,
            "total_conversions": conversions,
            "conversion_rate": (conversions / clicks * 100) if clicks else 0.0,
            "affiliate_count": int(affs["n"]),
            "active_affiliates": int(affs["active"]),
        },
        "top_products": top,
        "monthly": monthly,
        "recent_orders": recent,
    }

def payment_stats(cx, admin_id: int, now: int | None = None) -> dict:
    now = int(time.time()) if now is None else int(now)
    today = datetime.fromtimestamp(now, tz=timezone.utc)
    month_start = int(datetime(today.year, today.month, 1, tzinfo=timezone.utc).timestamp())
    r = cx.execute(
        f"""SELECT
              COALESCE(SUM(CASE WHEN o.status='paid' THEN o.amount END), 0) AS total_revenue,
              COALESCE(SUM(CASE WHEN o.status='paid' THEN 1 END), 0) AS paid_count,
              COALESCE(SUM(CASE WHEN o.status='pending' THEN o.amount END), 0) AS pending_amount,
              COALESCE(SUM(CASE WHEN o.status='pending' THEN 1 END), 0) AS pending_count,
              COALESCE(SUM(CASE WHEN o.status='failed' THEN 1 END), 0) AS failed_count,
              COALESCE(SUM(CASE WHEN o.status='paid' AND o.created_at >= ? THEN o.amount END), 0) AS this_month
            {_OWN_ORDERS}""",
        (month_start, admin_id)
    ).fetchone()
    return {k: r[k] for k in r.keys()}

# ----------------- DASHBOARD -----------------
@bp.get("/admin")
def admin_root():
    return redirect("/admin/dashboard")

@bp.get("/admin/dashboard")
def admin_dashboard():
    u = require_role("admin")
    if isinstance(u, Response): return u
    with conn() as cx:
        product_count = cx.execute("SELECT COUNT(*) AS n FROM products WHERE admin_id=?", (u["id"],)).fetchone()["n"]
        rev = cx.execute(
            f"SELECT COUNT(*) AS n, COALESCE(SUM(CASE WHEN o.status='paid' THEN o.amount END), 0) AS revenue {_OWN_ORDERS}",
            (u["id"],)
        ).fetchone()
        affiliate_count = cx.execute("SELECT COUNT(*) AS n FROM affiliates WHERE admin_id=?", (u["id"],)).fetchone()["n"]
        recent_orders = cx.execute(
            f"SELECT o.*, p.name AS product_name {_OWN_ORDERS} ORDER BY o.created_at DESC LIMIT 5",
            (u["id"],)
        ).fetchall()
        recent_products = cx.execute(
            "SELECT * FROM products WHERE admin_id=? ORDER BY created_at DESC, id DESC LIMIT 5",
            (u["id"],)
        ).fetchall()
    stats = {
        "products": product_count,
        "revenue": float(rev["revenue"]),
        "orders": rev["n"],
        "affiliates": affiliate_count,
    }
    return render_template("admin_dashboard.html", stats=stats,
                           recent_orders=recent_orders, recent_products=recent_products)

@bp.get("/admin/analytics")
def admin_analytics():
    u = require_role("admin")
    if isinstance(u, Response): return u
    with conn() as cx:
        data = compute_analytics(cx, u["id"])
    return render_template("admin_analytics.html", **data)

# ----------------- PAYMENTS -----------------
@bp.get("/admin/payments")
def admin_payments():
    u = require_role("admin")
    if isinstance(u, Response): return u
    status = (request.args.get("status") or "").strip().lower()
    sql = f"SELECT o.*, p.name AS product_name {_OWN_ORDERS}"
    args = [u["id"]]
    if status in ORDER_STATUSES:
        sql += " AND o.status=?"
        args.append(status)
    sql += " ORDER BY o.created_at DESC"
    with conn() as cx:
        rows = cx.execute(sql, args).fetchall()
        stats = payment_stats(cx, u["id"])
    return render_template("admin_payments.html", orders=rows, stats=stats,
                           status=status, statuses=ORDER_STATUSES)

@bp.get("/admin/payments/export.csv")
def admin_payments_export():
    u = require_role("admin")
    if isinstance(u, Response): return u
    with conn() as cx:
        rows = cx.execute(
            f"SELECT o.*, p.name AS product_name {_OWN_ORDERS} ORDER BY o.created_at DESC",
            (u["id"],)
        ).fetchall()
    out = io.StringIO()
    writer = csv.DictWriter(out, fieldnames=EXPORT_FIELDS, extrasaction="ignore")
    writer.writeheader()
    for r in rows:
        d = dict(r)
        d["created_at"] = datetime.fromtimestamp(d["created_at"] or 0, tz=timezone.utc).isoformat()
        writer.writerow(d)
    log.info("PAYMENTS_EXPORT admin=%s rows=%s", u["id"], len(rows))
    return Response(
        out.getvalue(),
        headers={
            "Content-Type": "text/csv; charset=utf-8",
            "Content-Disposition": "attachment; filename=payments.csv",
        }
    )

# ----------------- ORDER DETAIL -----------------
def _own_order(cx, order_id: str, admin_id: int):
    o = cx.execute(
        f"""SELECT o.*, p.name AS product_name, p.product_type
            {_OWN_ORDERS} AND o.id=?""",
        (admin_id, order_id)
    ).fetchone()
    if not o:
        abort(404)
    return o

def _order_page(cx, o, error=None, status=200):
    commission = cx.execute(
        """SELECT c.*, u.full_name AS affiliate_name
           FROM commissions c
           JOIN affiliates a ON a.id = c.affiliate_id
           JOIN users u ON u.id = a.profile_id
           WHERE c.order_id=?""",
        (o["id"],)
    ).fetchone()
    return render_template("admin_order.html", o=o, commission=commission, error=error,
                           statuses=ORDER_STATUSES, payment_statuses=PAYMENT_STATUSES,
                           fulfillment_statuses=FULFILLMENT_STATUSES), status

@bp.route("/admin/orders/<order_id>", methods=["GET", "POST"])
def admin_order(order_id):
    u = require_role("admin")
    if isinstance(u, Response): return u
    with conn() as cx:
        o = _own_order(cx, order_id, u["id"])
        if request.method == "GET":
            return _order_page(cx, o)

    f = request.form
    payment_status = (f.get("payment_status") or "").strip() or None
    fulfillment_status = (f.get("fulfillment_status") or "").strip() or None
    error = None
    if payment_status and payment_status not in PAYMENT_STATUSES:
        error = "Unknown payment status"
    elif fulfillment_status and fulfillment_status not in FULFILLMENT_STATUSES:
        error = "Unknown fulfillment status"
    else:
        try:
            set_status(order_id, f.get("status") or o["status"],
                       payment_status=payment_status, fulfillment_status=fulfillment_status,
                       notes=f.get("notes"))
        except OrderStateError as e:
            error = str(e)
    if error:
        with conn() as cx:
            return _order_page(cx, o, error, 400)
    log.info("ORDER_UPDATED id=%s by=%s", order_id, u["id"])
    return redirect(f"/admin/orders/{order_id}")
