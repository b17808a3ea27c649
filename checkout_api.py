# checkout_api.py
import logging
from flask import Blueprint, request, render_template, redirect, abort, current_app

from db import conn
from auth import current_user_row
from attribution import resolve_affiliate
from catalog_api import track_referral, remembered_ref
from orders import create_order, get_order, mark_paid, effective_price
from payments import validate_card, simulate_charge, CardError
from emailer import send_order_confirmation, send_sale_notice

bp = Blueprint("checkout", __name__)
log = logging.getLogger(__name__)

def _active_product(cx, product_id: int):
    p = cx.execute("SELECT * FROM products WHERE id=? AND is_active=1", (product_id,)).fetchone()
    if not p:
        abort(404)
    return p

def _order_with_product(cx, order_id: str):
    o = get_order(cx, order_id)
    if not o:
        abort(404)
    p = cx.execute("SELECT * FROM products WHERE id=?", (o["product_id"],)).fetchone() if o["product_id"] else None
    return o, p

def _referrer_name(cx, code, product_id):
    affiliate_id, _ = resolve_affiliate(cx, code, product_id)
    if not affiliate_id:
        return None
    row = cx.execute(
        "SELECT u.full_name FROM affiliates a JOIN users u ON u.id = a.profile_id WHERE a.id=?",
        (affiliate_id,)
    ).fetchone()
    return row["full_name"] if row else None

# ----------------- CHECKOUT -----------------
@bp.route("/checkout/<int:product_id>", methods=["GET", "POST"])
def checkout(product_id):
    u = current_user_row()

    if request.method == "GET":
        with conn() as cx:
            p = _active_product(cx, product_id)
            link = track_referral(cx, product_id, request.args.get("ref"))
            ref = link["tracking_code"] if link else remembered_ref(product_id)
            referrer = _referrer_name(cx, ref, product_id) if ref else None
        return render_template("checkout.html", p=p, price=effective_price(p), ref=ref,
                               referrer=referrer, form={"email": u["email"] if u else "",
                                                        "name": (u["full_name"] or "") if u else ""})

    f = request.form
    email = (f.get("email") or "").strip()
    name = (f.get("name") or "").strip()
    code = (f.get("ref") or "").strip() or remembered_ref(product_id)

    with conn() as cx:
        p = _active_product(cx, product_id)
        if not email or not name or "@" not in email:
            return render_template("checkout.html", p=p, price=effective_price(p), ref=code,
                                   referrer=None, form=f, error="Missing required fields"), 400
        # attribution comes from the tracking code only, never from a client-sent affiliate id
        affiliate_id, tracking_code = resolve_affiliate(cx, code, product_id)
        oid = create_order(cx, p, email, name,
                           affiliate_id=affiliate_id, tracking_code=tracking_code,
                           buyer_user_id=(u["id"] if u else None))
    return redirect(f"/payment/{oid}")

# ----------------- PAYMENT -----------------
def _notify(order, product):
    status_url = f"{current_app.config['APP_BASE_URL']}/o/{order['buyer_token']}"
    with conn() as cx:
        seller = cx.execute("SELECT * FROM users WHERE id=?", (product["admin_id"],)).fetchone()
        aff = cx.execute(
            "SELECT u.full_name FROM affiliates a JOIN users u ON u.id = a.profile_id WHERE a.id=?",
            (order["affiliate_id"],)
        ).fetchone() if order["affiliate_id"] else None
    try:
        send_order_confirmation(order, product, status_url, seller_email=(seller["email"] if seller else None))
        send_sale_notice(seller, order, product, affiliate_name=(aff["full_name"] if aff else None))
    except Exception as e:
        # the charge already went through, mail is best-effort from here
        log.warning("ORDER_EMAIL_FAILED order=%s err=%r", order["id"], e)

@bp.route("/payment/<order_id>", methods=["GET", "POST"])
def payment(order_id):
    with conn() as cx:
        o, p = _order_with_product(cx, order_id)

    if o["status"] == "paid":
        return redirect(f"/checkout/success/{o['id']}")
    if o["status"] != "pending":
        return render_template("payment.html", o=o, p=p,
                               error="This order can no longer be paid"), 400
    if not p:
        abort(404)

    if request.method == "GET":
        return render_template("payment.html", o=o, p=p)

    f = request.form
    try:
        last4 = validate_card(
            (f.get("cardNumber") or "").strip(),
            (f.get("expiryDate") or "").strip(),
            (f.get("cvv") or "").strip(),
            (f.get("cardholderName") or "").strip(),
        )
    except CardError as e:
        return render_template("payment.html", o=o, p=p, error=str(e)), 400

    ok, ref = simulate_charge(o["amount"])
    if not ok:
        log.info("PAYMENT_DECLINED order=%s card=****%s amount=%.2f", o["id"], last4, o["amount"])
        return render_template("payment.html", o=o, p=p, error="Payment failed. Please try again."), 400

    order, won = mark_paid(o["id"], ref)
    if won:
        _notify(order, p)
    return redirect(f"/checkout/success/{o['id']}")

# ----------------- SUCCESS / BUYER STATUS -----------------
@bp.get("/checkout/success/<order_id>")
def checkout_success(order_id):
    with conn() as cx:
        o, p = _order_with_product(cx, order_id)
    download_url = None
    if o["status"] == "paid" and p and p["product_type"] == "digital":
        download_url = p["download_url"]
    return render_template("success.html", o=o, p=p, download_url=download_url)

@bp.get("/o/<token>")
def buyer_status(token):
    with conn() as cx:
        o = cx.execute("SELECT * FROM orders WHERE buyer_token=?", (token,)).fetchone()
        if not o: abort(404)
        p = cx.execute("SELECT * FROM products WHERE id=?", (o["product_id"],)).fetchone() if o["product_id"] else None
        seller = cx.execute("SELECT full_name, email FROM users WHERE id=?", (p["admin_id"],)).fetchone() if p else None
    download_url = p["download_url"] if (p and o["status"] == "paid" and p["product_type"] == "digital") else None
    return render_template("buyer_status.html", o=o, p=p, seller=seller, download_url=download_url)
