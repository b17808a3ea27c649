"""
Order lifecycle and the commission ledger.

A sale is counted for an affiliate exactly once: the pending -> paid update is
guarded on the current status, and the commission row is unique per order.
Running totals on affiliates/affiliate_links move only together with a
ledger row, inside the same transaction.
"""
import time, uuid, logging

from db import conn
from payments import compute_commission, qmoney, DEFAULT_CURRENCY, DEFAULT_COMMISSION_RATE

log = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "paid", "failed", "refunded", "cancelled")
COMMISSION_STATUSES = ("pending", "approved", "paid", "cancelled")
_COMMISSION_NEXT = {"approved": ("pending",), "paid": ("pending", "approved")}


class OrderStateError(ValueError):
    pass


def effective_price(product) -> float:
    sale = product["sale_price"]
    if sale is not None and float(sale) > 0:
        return qmoney(sale)
    return qmoney(product["base_price"])

def create_order(cx, product, customer_email, customer_name,
                 affiliate_id=None, tracking_code=None, buyer_user_id=None) -> str:
    oid = uuid.uuid4().hex
    now = int(time.time())
    cx.execute(
        """INSERT INTO orders(
             id, customer_email, customer_name, product_id, affiliate_id, tracking_code,
             amount, currency, status, payment_status, fulfillment_status,
             buyer_user_id, buyer_token, created_at, updated_at
           )
           VALUES(?,?,?,?,?,?,?,?,'pending','unpaid','unfulfilled',?,?,?,?)""",
        (
            oid, customer_email.strip(), (customer_name or "").strip(), product["id"],
            affiliate_id, tracking_code, effective_price(product),
            (product["currency"] or DEFAULT_CURRENCY), buyer_user_id,
            uuid.uuid4().hex, now, now,
        )
    )
    log.info("ORDER_CREATED id=%s product=%s affiliate=%s", oid, product["id"], affiliate_id)
    return oid

def get_order(cx, order_id):
    return cx.execute("SELECT * FROM orders WHERE id=?", (order_id,)).fetchone()

# ---- commission ledger -------------------------------------------------------
def accrue_commission(cx, order):
    """Credit the order's affiliate once. Returns the commission amount, or None if nothing accrued."""
    if not order["affiliate_id"]:
        return None
    aff = cx.execute("SELECT * FROM affiliates WHERE id=?", (order["affiliate_id"],)).fetchone()
    if not aff:
        return None

    rate = aff["commission_rate"]
    if rate is None:
        rate = float(DEFAULT_COMMISSION_RATE)
    amount = float(compute_commission(order["amount"], rate))
    link = cx.execute(
        "SELECT id FROM affiliate_links WHERE affiliate_id=? AND product_id=?",
        (aff["id"], order["product_id"])
    ).fetchone()
    now = int(time.time())

    cur = cx.execute(
        """INSERT OR IGNORE INTO commissions(order_id, affiliate_id, link_id, amount, rate, status, created_at, updated_at)
           VALUES(?,?,?,?,?,'pending',?,?)""",
        (order["id"], aff["id"], (link["id"] if link else None), amount,
         float(rate), now, now)
    )
    if cur.rowcount == 0:
        existing = cx.execute("SELECT * FROM commissions WHERE order_id=?", (order["id"],)).fetchone()
        if existing["status"] != "cancelled":
            log.info("COMMISSION_DUPLICATE order=%s", order["id"])
            return None
        # re-paid after a refund: reopen the same ledger row
        cx.execute(
            "UPDATE commissions SET status='pending', amount=?, rate=?, updated_at=? WHERE id=?",
            (amount, float(rate), now, existing["id"])
        )

    cx.execute(
        """UPDATE affiliates
           SET total_earnings = ROUND(total_earnings + ?, 2),
               total_sales = total_sales + 1,
               updated_at = ?
           WHERE id=?""",
        (amount, now, aff["id"])
    )
    cx.execute(
        "UPDATE affiliate_links SET conversions = conversions + 1 WHERE affiliate_id=? AND product_id=?",
        (aff["id"], order["product_id"])
    )
    log.info("COMMISSION_ACCRUED order=%s affiliate=%s amount=%.2f", order["id"], aff["id"], amount)
    return amount

def reverse_commission(cx, order):
    """
    Undo an accrued commission when its order leaves 'paid'. Returns the
    reversed amount, or None. A commission already paid out keeps its row
    and the affiliate's totals; the seller has to recover it by hand.
    """
    c = cx.execute(
        "SELECT * FROM commissions WHERE order_id=? AND status != 'cancelled'",
        (order["id"],)
    ).fetchone()
    if not c:
        return None
    if c["status"] == "paid":
        log.warning("COMMISSION_CLAWBACK_NEEDED order=%s affiliate=%s amount=%.2f",
                    order["id"], c["affiliate_id"], c["amount"])
        return None
    now = int(time.time())
    cx.execute("UPDATE commissions SET status='cancelled', updated_at=? WHERE id=?", (now, c["id"]))
    cx.execute(
        """UPDATE affiliates
           SET total_earnings = MAX(0, ROUND(total_earnings - ?, 2)),
               total_sales = MAX(0, total_sales - 1),
               updated_at = ?
           WHERE id=?""",
        (c["amount"], now, c["affiliate_id"])
    )
    cx.execute(
        """UPDATE affiliate_links SET conversions = MAX(0, conversions - 1)
           WHERE affiliate_id=? AND product_id=?""",
        (c["affiliate_id"], order["product_id"])
    )
    log.info("COMMISSION_REVERSED order=%s affiliate=%s amount=%.2f", order["id"], c["affiliate_id"], c["amount"])
    return float(c["amount"])

# ---- state transitions -------------------------------------------------------
def mark_paid(order_id: str, payment_ref: str):
    """
    pending -> paid. Only the caller that wins the guarded update accrues
    commission; a replay gets (order, False) back and changes nothing.
    """
    now = int(time.time())
    with conn() as cx:
        cur = cx.execute(
            """UPDATE orders
               SET status='paid', payment_status='paid', payment_ref=?, updated_at=?
               WHERE id=? AND status='pending'""",
            (payment_ref, now, order_id)
        )
        won = cur.rowcount == 1
        order = get_order(cx, order_id)
        if won:
            accrue_commission(cx, order)
            log.info("ORDER_PAID id=%s ref=%s amount=%.2f", order_id, payment_ref, order["amount"])
        else:
            log.info("ORDER_PAID_REPLAY id=%s status=%s", order_id, order["status"] if order else None)
    return order, won

def set_status(order_id: str, status: str, payment_status=None, fulfillment_status=None, notes=None):
    """Seller-side update. Entering 'paid' accrues; leaving it for any other status reverses."""
    status = (status or "").strip().lower()
    if status not in ORDER_STATUSES:
        raise OrderStateError(f"unknown order status: {status!r}")
    now = int(time.time())
    with conn() as cx:
        order = get_order(cx, order_id)
        if not order:
            raise OrderStateError("order not found")
        prev = order["status"]
        cx.execute(
            """UPDATE orders
               SET status=?, payment_status=COALESCE(?, payment_status),
                   fulfillment_status=COALESCE(?, fulfillment_status),
                   notes=COALESCE(?, notes), updated_at=?
               WHERE id=?""",
            (status, payment_status or None, fulfillment_status or None, notes, now, order_id)
        )
        if prev != "paid" and status == "paid":
            accrue_commission(cx, order)
        elif prev == "paid" and status != "paid":
            reverse_commission(cx, order)
        log.info("ORDER_STATUS id=%s %s->%s", order_id, prev, status)
        return get_order(cx, order_id)

def set_commission_status(commission_id: int, admin_id: int, status: str):
    allowed_from = _COMMISSION_NEXT.get(status)
    if not allowed_from:
        raise OrderStateError(f"cannot move a commission to {status!r}")
    with conn() as cx:
        c = cx.execute(
            """SELECT c.* FROM commissions c
               JOIN affiliates a ON a.id = c.affiliate_id
               WHERE c.id=? AND a.admin_id=?""",
            (commission_id, admin_id)
        ).fetchone()
        if not c:
            raise OrderStateError("commission not found")
        if c["status"] not in allowed_from:
            raise OrderStateError(f"commission is {c['status']}")
        cx.execute(
            "UPDATE commissions SET status=?, updated_at=? WHERE id=?",
            (status, int(time.time()), commission_id)
        )
    log.info("COMMISSION_STATUS id=%s %s->%s", commission_id, c["status"], status)
    return status
