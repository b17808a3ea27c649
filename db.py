import os, sqlite3, threading

# --- Persistent locations (works on Render or locally) ---
DATA_ROOT = os.getenv("DATA_ROOT", "/var/data/koalacart")
DB_PATH   = os.getenv("SQLITE_DB_PATH", os.path.join(DATA_ROOT, "app.sqlite"))
BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "3000"))  # 3s default

_lock = threading.Lock()

def _ensure_dirs():
    try:
        os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)
    except OSError:
        pass

def conn():
    _ensure_dirs()
    cx = sqlite3.connect(DB_PATH, check_same_thread=False, detect_types=sqlite3.PARSE_DECLTYPES)
    cx.row_factory = sqlite3.Row
    cx.execute("PRAGMA foreign_keys=ON;")
    cx.execute("PRAGMA journal_mode=WAL;")
    cx.execute("PRAGMA synchronous=NORMAL;")
    cx.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS};")
    return cx

def init_db():
    _ensure_dirs()
    with _lock, conn() as cx:
        cx.executescript("""
        CREATE TABLE IF NOT EXISTS users(
          id INTEGER PRIMARY KEY,
          email TEXT NOT NULL UNIQUE,
          password_hash TEXT,          -- NULL: invited by a seller, not registered yet
          full_name TEXT,
          role TEXT,                   -- admin | affiliate | buyer | NULL (needs setup)
          phone TEXT,
          company TEXT,
          website TEXT,
          avatar_url TEXT,
          created_at INTEGER,
          updated_at INTEGER
        );

        CREATE TABLE IF NOT EXISTS categories(
          id INTEGER PRIMARY KEY,
          name TEXT NOT NULL,
          slug TEXT NOT NULL UNIQUE,
          description TEXT,
          image_url TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at INTEGER
        );

        CREATE TABLE IF NOT EXISTS products(
          id INTEGER PRIMARY KEY,
          admin_id INTEGER NOT NULL,
          category_id INTEGER,
          name TEXT NOT NULL,
          slug TEXT,
          description TEXT,
          short_description TEXT,
          product_type TEXT NOT NULL DEFAULT 'digital',     -- digital | physical
          pricing_type TEXT NOT NULL DEFAULT 'one_time',    -- one_time | subscription | trial
          base_price REAL NOT NULL DEFAULT 0,
          sale_price REAL,
          currency TEXT NOT NULL DEFAULT 'USD',
          image_url TEXT,
          download_url TEXT,
          tags_json TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          featured INTEGER NOT NULL DEFAULT 0,
          created_at INTEGER,
          updated_at INTEGER,
          FOREIGN KEY(admin_id) REFERENCES users(id),
          FOREIGN KEY(category_id) REFERENCES categories(id) ON DELETE SET NULL
        );
        CREATE INDEX IF NOT EXISTS idx_products_admin ON products(admin_id);
        CREATE INDEX IF NOT EXISTS idx_products_active ON products(is_active, created_at);

        CREATE TABLE IF NOT EXISTS affiliates(
          id INTEGER PRIMARY KEY,
          profile_id INTEGER NOT NULL,
          admin_id INTEGER NOT NULL,
          commission_rate REAL NOT NULL DEFAULT 0.15,   -- fraction, 0.15 = 15%
          total_earnings REAL NOT NULL DEFAULT 0,
          total_clicks INTEGER NOT NULL DEFAULT 0,
          total_sales INTEGER NOT NULL DEFAULT 0,
          notes TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at INTEGER,
          updated_at INTEGER,
          UNIQUE(profile_id, admin_id),
          FOREIGN KEY(profile_id) REFERENCES users(id),
          FOREIGN KEY(admin_id) REFERENCES users(id)
        );
        CREATE INDEX IF NOT EXISTS idx_affiliates_admin ON affiliates(admin_id);

        CREATE TABLE IF NOT EXISTS affiliate_links(
          id INTEGER PRIMARY KEY,
          affiliate_id INTEGER NOT NULL,
          product_id INTEGER NOT NULL,
          tracking_code TEXT NOT NULL UNIQUE,
          clicks INTEGER NOT NULL DEFAULT 0,
          conversions INTEGER NOT NULL DEFAULT 0,
          created_at INTEGER,
          UNIQUE(affiliate_id, product_id),
          FOREIGN KEY(affiliate_id) REFERENCES affiliates(id) ON DELETE CASCADE,
          FOREIGN KEY(product_id) REFERENCES products(id) ON DELETE CASCADE
        );

        -- One row per tracked visit; affiliate_links.clicks is the running total
        CREATE TABLE IF NOT EXISTS affiliate_clicks(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          link_id INTEGER NOT NULL,
          visitor_key TEXT,
          ip TEXT,
          user_agent TEXT,
          referer TEXT,
          created_at INTEGER NOT NULL,
          FOREIGN KEY(link_id) REFERENCES affiliate_links(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_affiliate_clicks_link ON affiliate_clicks(link_id, created_at);

        CREATE TABLE IF NOT EXISTS orders(
          id TEXT PRIMARY KEY,
          customer_email TEXT NOT NULL,
          customer_name TEXT,
          product_id INTEGER,
          affiliate_id INTEGER,
          tracking_code TEXT,
          amount REAL NOT NULL,
          currency TEXT NOT NULL DEFAULT 'USD',
          status TEXT NOT NULL DEFAULT 'pending',   -- pending | paid | failed | refunded | cancelled
          payment_status TEXT,
          fulfillment_status TEXT,
          payment_ref TEXT,
          notes TEXT,
          buyer_user_id INTEGER,
          buyer_token TEXT UNIQUE,
          created_at INTEGER,
          updated_at INTEGER,
          FOREIGN KEY(product_id) REFERENCES products(id) ON DELETE SET NULL,
          FOREIGN KEY(affiliate_id) REFERENCES affiliates(id) ON DELETE SET NULL
        );
        CREATE INDEX IF NOT EXISTS idx_orders_product ON orders(product_id, status);
        CREATE INDEX IF NOT EXISTS idx_orders_affiliate ON orders(affiliate_id);

        -- Accrual ledger: one commission per order, ever
        CREATE TABLE IF NOT EXISTS commissions(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          order_id TEXT NOT NULL UNIQUE,
          affiliate_id INTEGER NOT NULL,
          link_id INTEGER,
          amount REAL NOT NULL,
          rate REAL NOT NULL,
          status TEXT NOT NULL DEFAULT 'pending',   -- pending | approved | paid | cancelled
          created_at INTEGER NOT NULL,
          updated_at INTEGER,
          FOREIGN KEY(affiliate_id) REFERENCES affiliates(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_commissions_affiliate ON commissions(affiliate_id, status);

        CREATE TABLE IF NOT EXISTS payment_gateways(
          id INTEGER PRIMARY KEY,
          user_id INTEGER NOT NULL,
          gateway_type TEXT NOT NULL,    -- stripe | paypal | square
          publishable_key TEXT,
          secret_key TEXT,
          client_id TEXT,
          client_secret TEXT,
          webhook_secret TEXT,
          mode TEXT NOT NULL DEFAULT 'sandbox',
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at INTEGER,
          updated_at INTEGER,
          UNIQUE(user_id, gateway_type),
          FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
        );
        """)

def ensure_schema():
    """Add missing columns without dropping existing data."""
    with _lock, conn() as cx:
        # users: notification preferences
        try: cx.execute("ALTER TABLE users ADD COLUMN email_frequency TEXT DEFAULT 'instant'")
        except sqlite3.OperationalError: pass
        try: cx.execute("ALTER TABLE users ADD COLUMN notify_sales INTEGER DEFAULT 1")
        except sqlite3.OperationalError: pass
        try: cx.execute("ALTER TABLE users ADD COLUMN notify_affiliates INTEGER DEFAULT 1")
        except sqlite3.OperationalError: pass

        # Lookup indexes for older databases
        cx.execute("CREATE INDEX IF NOT EXISTS idx_orders_created ON orders(created_at)")
        cx.execute("CREATE INDEX IF NOT EXISTS idx_affiliates_profile ON affiliates(profile_id)")
