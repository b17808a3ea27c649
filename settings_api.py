# settings_api.py
import time, logging
from flask import Blueprint, request, render_template, redirect, Response
from werkzeug.security import generate_password_hash, check_password_hash

from db import conn
from auth import require_user
from payments import mask_secret

bp = Blueprint("settings", __name__)
log = logging.getLogger(__name__)

GATEWAY_MODES = ("sandbox", "live")
EMAIL_FREQUENCIES = ("instant", "daily", "weekly", "never")

def _now() -> int: return int(time.time())

def _gateways(user_id: int):
    with conn() as cx:
        rows = cx.execute(
            "SELECT * FROM payment_gateways WHERE user_id=? ORDER BY gateway_type",
            (user_id,)
        ).fetchall()
    # never hand raw secrets to templates
    return [
        {
            "id": r["id"],
            "gateway_type": r["gateway_type"],
            "mode": r["mode"],
            "is_active": bool(r["is_active"]),
            "publishable_key": r["publishable_key"] or "",
            "secret_key": mask_secret(r["secret_key"]),
            "client_id": r["client_id"] or "",
            "client_secret": mask_secret(r["client_secret"]),
            "webhook_secret": mask_secret(r["webhook_secret"]),
        }
        for r in rows
    ]

def _upsert_gateway(user_id: int, gateway_type: str, **fields):
    now = _now()
    cols = ["publishable_key", "secret_key", "client_id", "client_secret", "webhook_secret", "mode"]
    vals = [fields.get(c) for c in cols]
    with conn() as cx:
        cx.execute(
            f"""INSERT INTO payment_gateways(user_id, gateway_type, {", ".join(cols)}, is_active, created_at, updated_at)
                VALUES(?,?,{",".join("?" * len(cols))},1,?,?)
                ON CONFLICT(user_id, gateway_type) DO UPDATE SET
                  publishable_key=excluded.publishable_key,
                  secret_key=excluded.secret_key,
                  client_id=excluded.client_id,
                  client_secret=excluded.client_secret,
                  webhook_secret=excluded.webhook_secret,
                  mode=excluded.mode,
                  is_active=1,
                  updated_at=excluded.updated_at""",
            (user_id, gateway_type, *vals, now, now)
        )
    log.info("GATEWAY_SAVED user=%s type=%s mode=%s", user_id, gateway_type, fields.get("mode"))

def _handle_gateway_intent(u, intent: str):
    """Shared by /settings and /settings/payments. Returns an error string or None."""
    f = request.form
    if intent == "add-stripe":
        pk = (f.get("stripePublishableKey") or "").strip()
        sk = (f.get("stripeSecretKey") or "").strip()
        wh = (f.get("stripeWebhookSecret") or "").strip() or None
        if not pk or not sk:
            return "Stripe keys are required"
        mode = "live" if pk.startswith("pk_live") else "sandbox"
        _upsert_gateway(u["id"], "stripe", publishable_key=pk, secret_key=sk, webhook_secret=wh, mode=mode)
        return None

    if intent == "add-paypal":
        cid = (f.get("paypalClientId") or "").strip()
        secret = (f.get("paypalClientSecret") or "").strip()
        mode = (f.get("paypalMode") or "sandbox").strip().lower()
        if not cid or not secret:
            return "PayPal credentials are required"
        if mode not in GATEWAY_MODES:
            mode = "sandbox"
        _upsert_gateway(u["id"], "paypal", client_id=cid, client_secret=secret, mode=mode)
        return None

    if intent == "toggle-gateway":
        try:
            gid = int(f.get("gatewayId") or 0)
        except ValueError:
            return "Invalid gateway"
        active = 1 if (f.get("isActive") or "").lower() == "true" else 0
        with conn() as cx:
            cur = cx.execute(
                "UPDATE payment_gateways SET is_active=?, updated_at=? WHERE id=? AND user_id=?",
                (active, _now(), gid, u["id"])
            )
        if cur.rowcount != 1:
            return "Failed to update gateway status"
        log.info("GATEWAY_TOGGLED user=%s gateway=%s active=%s", u["id"], gid, active)
        return None

    return "Invalid action"

# ----------------- PROFILE + GATEWAYS -----------------
@bp.route("/settings", methods=["GET", "POST"])
def settings():
    u = require_user()
    if isinstance(u, Response): return u

    if request.method == "POST":
        intent = (request.form.get("intent") or "").strip()
        if intent == "update-profile":
            f = request.form
            full_name = (f.get("fullName") or "").strip()
            if not full_name:
                return render_template("settings.html", u=u, gateways=_gateways(u["id"]),
                                       error="Full name is required"), 400
            with conn() as cx:
                cx.execute(
                    """UPDATE users SET full_name=?, phone=?, company=?, website=?, updated_at=?
                       WHERE id=?""",
                    (full_name, (f.get("phone") or "").strip() or None,
                     (f.get("company") or "").strip() or None,
                     (f.get("website") or "").strip() or None, _now(), u["id"])
                )
            log.info("PROFILE_UPDATED user=%s", u["id"])
            return redirect("/settings?saved=profile")

        err = _handle_gateway_intent(u, intent)
        if err:
            return render_template("settings.html", u=u, gateways=_gateways(u["id"]), error=err), 400
        return redirect("/settings?saved=gateway")

    return render_template("settings.html", u=u, gateways=_gateways(u["id"]),
                           saved=request.args.get("saved"))

@bp.route("/settings/payments", methods=["GET", "POST"])
def settings_payments():
    u = require_user()
    if isinstance(u, Response): return u

    if request.method == "POST":
        err = _handle_gateway_intent(u, (request.form.get("intent") or "").strip())
        if err:
            return render_template("settings_payments.html", u=u, gateways=_gateways(u["id"]), error=err), 400
        return redirect("/settings/payments?saved=1")

    return render_template("settings_payments.html", u=u, gateways=_gateways(u["id"]),
                           saved=request.args.get("saved"))

# ----------------- SECURITY -----------------
@bp.route("/settings/security", methods=["GET", "POST"])
def settings_security():
    u = require_user()
    if isinstance(u, Response): return u

    if request.method == "POST":
        f = request.form
        current = f.get("currentPassword") or ""
        new = f.get("newPassword") or ""
        confirm = f.get("confirmPassword") or ""
        error = None
        if not current or not new:
            error = "Current and new password are required"
        elif not u["password_hash"] or not check_password_hash(u["password_hash"], current):
            error = "Current password is incorrect"
        elif len(new) < 6:
            error = "Password must be at least 6 characters"
        elif new != confirm:
            error = "Passwords do not match"
        if error:
            return render_template("settings_security.html", u=u, error=error), 400
        with conn() as cx:
            cx.execute("UPDATE users SET password_hash=?, updated_at=? WHERE id=?",
                       (generate_password_hash(new), _now(), u["id"]))
        log.info("PASSWORD_CHANGED user=%s", u["id"])
        return redirect("/settings/security?saved=1")

    return render_template("settings_security.html", u=u, saved=request.args.get("saved"))

# ----------------- NOTIFICATIONS -----------------
@bp.route("/settings/notifications", methods=["GET", "POST"])
def settings_notifications():
    u = require_user()
    if isinstance(u, Response): return u

    if request.method == "POST":
        f = request.form
        freq = (f.get("emailFrequency") or "instant").strip().lower()
        if freq not in EMAIL_FREQUENCIES:
            return render_template("settings_notifications.html", u=u,
                                   error="Unknown email frequency"), 400
        with conn() as cx:
            cx.execute(
                """UPDATE users SET email_frequency=?, notify_sales=?, notify_affiliates=?, updated_at=?
                   WHERE id=?""",
                (freq, 1 if f.get("notifySales") else 0, 1 if f.get("notifyAffiliates") else 0,
                 _now(), u["id"])
            )
        return redirect("/settings/notifications?saved=1")

    return render_template("settings_notifications.html", u=u, saved=request.args.get("saved"))
