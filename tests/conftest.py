import os, time, json, tempfile

# settings are read at import time, so they go in before any project import
_BOOT = tempfile.mkdtemp(prefix="koalacart-tests-")
os.environ["DATA_ROOT"] = _BOOT
os.environ["SQLITE_DB_PATH"] = os.path.join(_BOOT, "boot.sqlite")
os.environ["FLASK_SECRET"] = "test-secret"
os.environ["SESSION_COOKIE_SECURE"] = "false"
os.environ["APP_BASE_URL"] = "http://shop.test"
os.environ["SMTP_HOST"] = ""

import pytest
from werkzeug.security import generate_password_hash

import db
import payments

PASSWORD = "hunter22"


@pytest.fixture
def database(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "app.sqlite"))
    db.init_db()
    db.ensure_schema()
    return db


@pytest.fixture
def app(database):
    from app import app as flask_app
    flask_app.config.update(TESTING=True)
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def approve_payments(monkeypatch):
    monkeypatch.setattr(payments, "PAYMENT_SUCCESS_RATE", 1.0)


@pytest.fixture
def decline_payments(monkeypatch):
    monkeypatch.setattr(payments, "PAYMENT_SUCCESS_RATE", 0.0)


@pytest.fixture
def make_user(database):
    def _make(email, role=None, full_name=None, password=PASSWORD):
        now = int(time.time())
        with db.conn() as cx:
            cur = cx.execute(
                """INSERT INTO users(email, password_hash, full_name, role, created_at, updated_at)
                   VALUES(?,?,?,?,?,?)""",
                (email, generate_password_hash(password) if password else None,
                 full_name or email.split("@")[0].title(), role, now, now)
            )
            return cx.execute("SELECT * FROM users WHERE id=?", (cur.lastrowid,)).fetchone()
    return _make


@pytest.fixture
def make_product(database):
    def _make(admin, name="Field Guide", base_price=40.0, sale_price=None,
              product_type="digital", is_active=1, featured=0, download_url="https://files.test/guide.pdf",
              created_at=None):
        now = created_at or int(time.time())
        with db.conn() as cx:
            cur = cx.execute(
                """INSERT INTO products(admin_id, name, slug, description, product_type, base_price,
                                        sale_price, currency, download_url, tags_json, is_active,
                                        featured, created_at, updated_at)
                   VALUES(?,?,?,?,?,?,?,'USD',?,?,?,?,?,?)""",
                (admin["id"], name, name.lower().replace(" ", "-"), f"All about {name}",
                 product_type, base_price, sale_price, download_url, json.dumps([]),
                 is_active, featured, now, now)
            )
            return cx.execute("SELECT * FROM products WHERE id=?", (cur.lastrowid,)).fetchone()
    return _make


@pytest.fixture
def make_affiliate(database):
    def _make(profile, admin, rate=0.15, is_active=1):
        now = int(time.time())
        with db.conn() as cx:
            cur = cx.execute(
                """INSERT INTO affiliates(profile_id, admin_id, commission_rate, is_active, created_at, updated_at)
                   VALUES(?,?,?,?,?,?)""",
                (profile["id"], admin["id"], rate, is_active, now, now)
            )
            return cx.execute("SELECT * FROM affiliates WHERE id=?", (cur.lastrowid,)).fetchone()
    return _make


@pytest.fixture
def login():
    def _login(client, user):
        with client.session_transaction() as s:
            s["user_id"] = user["id"]
    return _login


@pytest.fixture
def seller(make_user):
    return make_user("seller@shop.test", role="admin", full_name="Sam Seller")


@pytest.fixture
def promoter(make_user):
    return make_user("aff@shop.test", role="affiliate", full_name="Ada Affiliate")


def fetch(sql, args=()):
    with db.conn() as cx:
        return cx.execute(sql, args).fetchone()


def fetch_all(sql, args=()):
    with db.conn() as cx:
        return cx.execute(sql, args).fetchall()
