# accounts_api.py
import time, logging, sqlite3
from urllib.parse import urlparse
from flask import Blueprint, request, render_template, redirect, Response, abort
from werkzeug.security import generate_password_hash, check_password_hash

from db import conn
from auth import (
    current_user_row, require_user, effective_role, role_home, login_user, logout_user,
    mint_login_token, set_impersonation, clear_impersonation, ROLES,
)

bp = Blueprint("accounts", __name__)
log = logging.getLogger(__name__)

MIN_PASSWORD_LEN = 6

def _form():
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form

def _safe_next_path(raw):
    """Same-site relative paths only (/checkout/3, /dashboard?tab=1)."""
    if not raw or not isinstance(raw, str):
        return None
    if not raw.startswith("/") or raw.startswith("//"):
        return None
    parsed = urlparse(raw)
    if parsed.scheme or parsed.netloc:
        return None
    return raw

def _fail(template, message, status=400, **ctx):
    if request.is_json:
        return {"ok": False, "error": message}, status
    return render_template(template, error=message, **ctx), status

# ----------------- LOGIN / LOGOUT -----------------
@bp.route("/login", methods=["GET", "POST"])
def login():
    next_path = _safe_next_path(request.values.get("next"))
    if request.method == "GET":
        u = current_user_row()
        if u:
            return redirect(next_path or role_home(effective_role(u)))
        return render_template("login.html", next=next_path)

    data = _form()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    next_path = _safe_next_path(data.get("next")) or next_path
    if not email or not password:
        return _fail("login.html", "Email and password are required", email=email, next=next_path)

    with conn() as cx:
        row = cx.execute("SELECT * FROM users WHERE email=?", (email,)).fetchone()
    if not row or not row["password_hash"] or not check_password_hash(row["password_hash"], password):
        log.info("LOGIN_FAILED email=%s", email)
        return _fail("login.html", "Invalid email or password", email=email, next=next_path)

    login_user(row)
    target = next_path or role_home(row["role"])
    if not request.is_json:
        return redirect(target)
    return {"ok": True, "redirect": target, "token": mint_login_token(row["id"])}, 200

@bp.route("/logout", methods=["GET", "POST"])
def logout():
    logout_user()
    return redirect("/")

# ----------------- REGISTER -----------------
@bp.route("/register", methods=["GET", "POST"])
def register():
    if request.method == "GET":
        if current_user_row():
            return redirect("/dashboard")
        return render_template("register.html", email=request.args.get("email", ""))

    data = _form()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    full_name = (data.get("fullName") or "").strip()
    if not email or not password or not full_name:
        return _fail("register.html", "All fields are required", email=email, full_name=full_name)
    if "@" not in email:
        return _fail("register.html", "Please enter a valid email address", email=email, full_name=full_name)
    if len(password) < MIN_PASSWORD_LEN:
        return _fail("register.html", f"Password must be at least {MIN_PASSWORD_LEN} characters",
                     email=email, full_name=full_name)

    now = int(time.time())
    pw_hash = generate_password_hash(password)
    with conn() as cx:
        row = cx.execute("SELECT * FROM users WHERE email=?", (email,)).fetchone()
        if row and row["password_hash"]:
            return _fail("register.html", "An account with this email already exists", email=email, full_name=full_name)
        if row:
            # invited by a seller: claim the placeholder, keep its role and affiliations
            cx.execute(
                "UPDATE users SET password_hash=?, full_name=?, updated_at=? WHERE id=?",
                (pw_hash, full_name, now, row["id"])
            )
            log.info("REGISTER_CLAIMED user=%s", row["id"])
        else:
            try:
                cx.execute(
                    """INSERT INTO users(email, password_hash, full_name, role, created_at, updated_at)
                       VALUES(?,?,?,NULL,?,?)""",
                    (email, pw_hash, full_name, now, now)
                )
            except sqlite3.IntegrityError:
                return _fail("register.html", "An account with this email already exists", email=email, full_name=full_name)
            log.info("REGISTER email=%s", email)
        row = cx.execute("SELECT * FROM users WHERE email=?", (email,)).fetchone()

    login_user(row)
    if request.is_json:
        return {"ok": True, "redirect": "/dashboard", "token": mint_login_token(row["id"])}, 200
    return redirect("/dashboard")

# ----------------- DASHBOARD / ROLE SETUP -----------------
@bp.route("/dashboard", methods=["GET", "POST"])
def dashboard():
    u = require_user()
    if isinstance(u, Response): return u

    if request.method == "POST":
        # role setup happens once
        if u["role"]:
            return redirect(role_home(effective_role(u)))
        role = (request.form.get("role") or "").strip().lower()
        if role not in ROLES:
            return render_template("setup.html", error="Please select an account type"), 400
        with conn() as cx:
            cur = cx.execute(
                "UPDATE users SET role=?, updated_at=? WHERE id=? AND role IS NULL",
                (role, int(time.time()), u["id"])
            )
        if cur.rowcount != 1:
            log.warning("ROLE_SET_RACE user=%s role=%s", u["id"], role)
            return redirect("/dashboard")
        log.info("ROLE_SET user=%s role=%s", u["id"], role)
        return redirect(role_home(role))

    if not u["role"]:
        return render_template("setup.html")

    role = effective_role(u)
    if role in ("admin", "affiliate"):
        return redirect(role_home(role))

    with conn() as cx:
        orders = cx.execute(
            """SELECT o.*, p.name AS product_name, p.product_type, p.download_url
               FROM orders o LEFT JOIN products p ON p.id = o.product_id
               WHERE o.buyer_user_id=? OR o.customer_email=?
               ORDER BY o.created_at DESC""",
            (u["id"], u["email"])
        ).fetchall()
    return render_template("dashboard.html", u=u, orders=orders)

# ----------------- IMPERSONATION -----------------
@bp.post("/admin/impersonate")
def impersonate():
    u = require_user()
    if isinstance(u, Response): return u
    if u["role"] != "admin":
        abort(403)

    if (request.form.get("action") or "") == "clear":
        clear_impersonation()
        return redirect("/admin/dashboard")

    role = request.form.get("role")
    if not set_impersonation(u, role):
        abort(400)
    return redirect(role_home(effective_role(u)))
