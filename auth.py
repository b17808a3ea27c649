"""
Sign-in state: the Flask session cookie, short-lived bearer tokens for
cookie-less clients, role checks and admin role impersonation.
"""
import time, json, hmac, base64, hashlib, logging
from flask import request, session, redirect, current_app, Response

from db import conn

log = logging.getLogger(__name__)

ROLES = ("admin", "affiliate", "buyer")
# what an admin may preview the site as; "user" is the buyer view
IMPERSONATION_ROLES = {"admin": "admin", "affiliate": "affiliate", "user": "buyer"}

# ----------------- SHORT-LIVED BEARER TOKENS -----------------
TOKEN_TTL = 60 * 10

def _b64url(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")
def _b64url_dec(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)
def _key() -> bytes:
    k = current_app.secret_key
    return k if isinstance(k, bytes) else k.encode("utf-8")

def mint_login_token(user_id: int, ttl: int = TOKEN_TTL) -> str:
    payload = {"uid": user_id, "exp": int(time.time()) + ttl, "v": 1}
    body = _b64url(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    sig = hmac.new(_key(), body.encode("utf-8"), hashlib.sha256).digest()
    return body + "." + _b64url(sig)

def verify_login_token(token: str):
    try:
        body, sig = token.split(".")
        want = hmac.new(_key(), body.encode("utf-8"), hashlib.sha256).digest()
        if not hmac.compare_digest(_b64url(want), sig):
            return None
        payload = json.loads(_b64url_dec(body))
        if payload.get("exp", 0) < int(time.time()):
            return None
        return int(payload.get("uid"))
    except (ValueError, TypeError, json.JSONDecodeError):
        return None

def get_bearer_token_from_request() -> str | None:
    t = request.args.get("t") or request.form.get("t")
    if t: return t.strip()
    auth = request.headers.get("Authorization", "")
    if auth and auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return None

# ----------------- SESSION -----------------
def current_user_row():
    uid = session.get("user_id")
    if not uid:
        tok = get_bearer_token_from_request()
        if tok:
            uid = verify_login_token(tok)
    if not uid:
        return None
    with conn() as cx:
        return cx.execute("SELECT * FROM users WHERE id=?", (uid,)).fetchone()

def login_user(row):
    session.clear()
    session["user_id"] = row["id"]
    session.permanent = True
    log.info("LOGIN user=%s role=%s", row["id"], row["role"])

def logout_user():
    uid = session.get("user_id")
    session.clear()
    if uid:
        log.info("LOGOUT user=%s", uid)

def effective_role(user) -> str | None:
    """The role pages are rendered for. Only a real admin can see another role's view."""
    if not user:
        return None
    role = user["role"]
    if role == "admin":
        return session.get("impersonate_role") or role
    return role

def role_home(role: str | None) -> str:
    if role == "admin":
        return "/admin/dashboard"
    if role == "affiliate":
        return "/affiliate/dashboard"
    return "/dashboard"

def require_user():
    row = current_user_row()
    if not row: return redirect("/login")
    return row

def require_role(*roles):
    """Signed-in user whose effective role is one of roles, else a redirect Response."""
    u = require_user()
    if isinstance(u, Response):
        return u
    if effective_role(u) not in roles:
        return redirect("/dashboard")
    return u

# ----------------- IMPERSONATION -----------------
def set_impersonation(user, role: str) -> bool:
    if not user or user["role"] != "admin":
        return False
    target = IMPERSONATION_ROLES.get((role or "").strip().lower())
    if not target:
        return False
    if target == "admin":
        session.pop("impersonate_role", None)
    else:
        session["impersonate_role"] = target
    log.info("IMPERSONATE user=%s as=%s", user["id"], target)
    return True

def clear_impersonation():
    session.pop("impersonate_role", None)
