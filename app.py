import os, time, base64, hashlib, logging
from datetime import timedelta, datetime, timezone
from urllib.parse import urlparse
import mimetypes
from io import BytesIO

# ----------------- ENV -----------------
# before the local imports: db/payments/emailer read their settings at import time
from dotenv import load_dotenv
load_dotenv()

import requests
from PIL import Image, ImageOps, UnidentifiedImageError
from werkzeug.utils import secure_filename
from flask import Flask, request, render_template, Response, session

from db import init_db, ensure_schema
from payments import DEFAULT_CURRENCY, rate_to_percent
from auth import current_user_row, effective_role

APP_NAME      = os.getenv("APP_NAME", "KoalaCart")
APP_BASE_URL  = os.getenv("APP_BASE_URL", "http://localhost:5000").rstrip("/")
DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "")
LOG_LEVEL     = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

# ----------------- APP -----------------
app = Flask(__name__)

# ----------------- PERSISTENT DATA ROOT -----------------
DATA_ROOT   = os.getenv("DATA_ROOT", "/var/data/koalacart")
os.makedirs(DATA_ROOT, exist_ok=True)
UPLOAD_DIR  = os.path.join(DATA_ROOT, "uploads")
os.makedirs(UPLOAD_DIR, exist_ok=True)
MEDIA_PREFIX = "/media"

app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_UPLOAD_MB", "10")) * 1024 * 1024
ALLOWED_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}

# Sessions / cookies
_secret = os.getenv("FLASK_SECRET") or os.urandom(32)
app.secret_key = _secret
app.config.update(
    SESSION_COOKIE_NAME="koalacart_session",
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "true").lower() == "true",
    SESSION_COOKIE_HTTPONLY=True,
    PERMANENT_SESSION_LIFETIME=timedelta(days=7),
    APP_NAME=APP_NAME,
    APP_BASE_URL=APP_BASE_URL,
    DEFAULT_ADMIN_EMAIL=DEFAULT_ADMIN_EMAIL,
)

# ----------------- TEMPLATE HELPERS -----------------
@app.template_filter("money")
def money_filter(value, currency=None):
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        amount = 0.0
    cur = (currency or DEFAULT_CURRENCY).upper()
    if cur == "USD":
        return f"${amount:,.2f}"
    return f"{amount:,.2f} {cur}"

@app.template_filter("ts")
def ts_filter(value, fmt="%b %d, %Y"):
    if not value:
        return ""
    return datetime.fromtimestamp(int(value), tz=timezone.utc).strftime(fmt)

@app.template_filter("percent")
def percent_filter(rate):
    return f"{rate_to_percent(rate or 0):g}%"

@app.context_processor
def inject_globals():
    u = current_user_row()
    return {
        "APP_NAME": APP_NAME,
        "APP_BASE_URL": APP_BASE_URL,
        "MEDIA_PREFIX": MEDIA_PREFIX,
        "current_user": u,
        "role": effective_role(u),
        "impersonating": bool(u and u["role"] == "admin" and session.get("impersonate_role")),
    }

# ----------------- DB & SCHEMA -----------------
init_db()
ensure_schema()

# ----------------- BLUEPRINTS -----------------
from accounts_api import bp as accounts_bp
from settings_api import bp as settings_bp
from catalog_api import bp as catalog_bp
from checkout_api import bp as checkout_bp
from affiliates_api import bp as affiliates_bp
from admin_api import bp as admin_bp

app.register_blueprint(accounts_bp)
app.register_blueprint(settings_bp)
app.register_blueprint(catalog_bp)
app.register_blueprint(checkout_bp)
app.register_blueprint(affiliates_bp)
app.register_blueprint(admin_bp)

# ----------------- MEDIA -----------------
_TRANSPARENT_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAA"
    "AAC0lEQVR42mP8/x8AAwMCAO6dEpgAAAAASUVORK5CYII="
)

def _pixel():
    return Response(_TRANSPARENT_PNG, headers={"Content-Type": "image/png", "Cache-Control": "public, max-age=86400"})

@app.get(f"{MEDIA_PREFIX}/<path:filename>")
def media(filename):
    """
    Read-only serving of files saved in UPLOAD_DIR.
    Filenames are content hashes, so responses are cached for a year.
    """
    safe_base = os.path.abspath(UPLOAD_DIR)
    safe_path = os.path.abspath(os.path.normpath(os.path.join(safe_base, filename)))
    if not safe_path.startswith(safe_base + os.sep) or not os.path.exists(safe_path):
        return _pixel()
    ctype = mimetypes.guess_type(safe_path)[0] or "application/octet-stream"
    with open(safe_path, "rb") as f:
        data = f.read()
    return Response(
        data,
        headers={
            "Content-Type": ctype,
            "Cache-Control": "public, max-age=31536000, immutable"
        }
    )

# ----------------- UPLOADS -----------------
@app.post("/upload")
def upload():
    u = current_user_row()
    if not u:
        return {"ok": False, "error": "auth_required"}, 401
    if "file" not in request.files:
        return {"ok": False, "error": "missing_file_field"}, 400

    f = request.files["file"]
    if not f or not f.filename:
        return {"ok": False, "error": "empty_file"}, 400

    raw = f.read()
    if not raw:
        return {"ok": False, "error": "empty_file"}, 400

    bio = BytesIO(raw)
    try:
        img = Image.open(bio)
        img.verify()  # quick integrity check
    except (UnidentifiedImageError, OSError, SyntaxError):
        return {"ok": False, "error": "invalid_image"}, 400

    # verify() invalidates parser state
    bio.seek(0)
    img = Image.open(bio)

    fmt = (img.format or "").upper()
    ext = "jpg" if fmt == "JPEG" else fmt.lower()
    if ext not in ALLOWED_EXTENSIONS:
        return {"ok": False, "error": "unsupported_format"}, 400

    is_animated_gif = (fmt == "GIF" and getattr(img, "is_animated", False))
    if is_animated_gif:
        out_bytes = raw
    else:
        # fix orientation and drop EXIF by re-encoding
        img = ImageOps.exif_transpose(img)
        MAX_DIM = 2048
        if max(img.size) > MAX_DIM:
            img.thumbnail((MAX_DIM, MAX_DIM))

        mode = img.mode
        has_alpha = ("A" in mode) or (mode in ("RGBA", "LA", "P"))
        buf = BytesIO()
        if ext == "jpg":
            if mode != "RGB":
                img = img.convert("RGB")
            img.save(buf, format="JPEG", quality=85, optimize=True, progressive=True)
        elif ext == "png":
            if mode == "P":
                img = img.convert("RGBA" if has_alpha else "RGB")
            img.save(buf, format="PNG", optimize=True)
        elif ext == "webp":
            if mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA" if has_alpha else "RGB")
            img.save(buf, format="WEBP", quality=85, method=4)
        else:
            buf = BytesIO(raw)
        out_bytes = buf.getvalue()

    # content-hash filename, duplicates collapse to one file
    digest = hashlib.sha256(out_bytes).hexdigest()
    safe_name = secure_filename(f"{digest[:32]}.{ext}")
    path = os.path.join(UPLOAD_DIR, safe_name)

    if not os.path.exists(path):
        try:
            with open(path, "wb") as out:
                out.write(out_bytes)
        except OSError as e:
            log.error("UPLOAD_SAVE_FAILED user=%s err=%r", u["id"], e)
            return {"ok": False, "error": "save_failed"}, 500

    log.info("UPLOAD user=%s file=%s bytes=%s", u["id"], safe_name, len(out_bytes))
    return {"ok": True, "url": f"{MEDIA_PREFIX}/{safe_name}"}, 200

# ----------------- IMAGE PROXY -----------------
@app.get("/uimg")
def uimg():
    src = (request.args.get("src") or "").strip()
    if not src:
        return _pixel()
    u = urlparse(src)

    # Local paths: /static and /media
    if not u.scheme and src.startswith(("/static/", "/media/")):
        if src.startswith("/static/"):
            base_root = app.static_folder or os.path.join(os.path.dirname(__file__), "static")
            rel_path = src[len("/static/"):]
        else:
            base_root = UPLOAD_DIR
            rel_path = src[len("/media/"):]
        safe_base = os.path.abspath(base_root)
        safe_path = os.path.abspath(os.path.normpath(os.path.join(safe_base, rel_path)))
        if not safe_path.startswith(safe_base + os.sep) or not os.path.exists(safe_path):
            return _pixel()
        ctype = mimetypes.guess_type(safe_path)[0] or "image/png"
        with open(safe_path, "rb") as f:
            data = f.read()
        return Response(data, headers={"Content-Type": ctype, "Cache-Control": "public, max-age=86400"})

    if u.scheme in ("http", "https"):
        if u.scheme != "https":
            # cleartext only from our own host
            if u.netloc != (urlparse(APP_BASE_URL).netloc or request.host):
                return _pixel()
        try:
            r = requests.get(src, stream=True, timeout=10, headers={"User-Agent": "koalacart-image-proxy"})
        except requests.RequestException as e:
            log.warning("UIMG_FETCH_FAILED src=%s err=%r", src, e)
            return _pixel()
        if r.status_code != 200:
            return _pixel()
        ctype = r.headers.get("Content-Type", "image/png")
        if not ctype.startswith("image/"):
            return _pixel()
        return Response(r.content, headers={"Content-Type": ctype, "Cache-Control": "public, max-age=86400"})

    return _pixel()

# ----------------- ERRORS -----------------
@app.errorhandler(403)
def forbidden(e):
    return render_template("error.html", code=403, message="You don't have access to this page."), 403

@app.errorhandler(404)
def not_found(e):
    return render_template("error.html", code=404, message="We couldn't find that page."), 404

@app.get("/healthz")
def healthz():
    return {"ok": True, "ts": int(time.time())}


# =========================================================================== #
# ----------------- MAIN -----------------
if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    app.run(host="0.0.0.0", port=port, debug=False)
