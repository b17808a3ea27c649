"""
Affiliate link tracking.

Every function here takes an open connection so callers can keep the event
row and the counters it feeds inside one transaction.
"""
import time, logging, sqlite3, secrets

log = logging.getLogger(__name__)

_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"

def _base36(n: int) -> str:
    if n <= 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))

def make_tracking_code(profile_id: int, product_id: int, now_ms: int | None = None) -> str:
    now_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    return f"{int(profile_id):04x}-{int(product_id):04x}-{_base36(now_ms)}"

def find_link(cx, code: str, product_id: int | None = None):
    code = (code or "").strip()
    if not code:
        return None
    sql = """
        SELECT l.*, a.profile_id, a.admin_id, a.is_active AS affiliate_active,
               a.commission_rate, u.full_name AS affiliate_name
        FROM affiliate_links l
        JOIN affiliates a ON a.id = l.affiliate_id
        JOIN users u      ON u.id = a.profile_id
        WHERE l.tracking_code = ?
    """
    args = [code]
    if product_id is not None:
        sql += " AND l.product_id = ?"
        args.append(int(product_id))
    return cx.execute(sql, args).fetchone()

def record_click(cx, link, visitor_key=None, ip=None, user_agent=None, referer=None) -> int:
    """Append the click event and bump both running counters. Returns the link's new click count."""
    now = int(time.time())
    cx.execute(
        """INSERT INTO affiliate_clicks(link_id, visitor_key, ip, user_agent, referer, created_at)
           VALUES(?,?,?,?,?,?)""",
        (link["id"], visitor_key, ip, (user_agent or "")[:500], (referer or "")[:1000], now)
    )
    cx.execute("UPDATE affiliate_links SET clicks = clicks + 1 WHERE id=?", (link["id"],))
    cx.execute(
        "UPDATE affiliates SET total_clicks = total_clicks + 1, updated_at=? WHERE id=?",
        (now, link["affiliate_id"])
    )
    row = cx.execute("SELECT clicks FROM affiliate_links WHERE id=?", (link["id"],)).fetchone()
    log.info("AFF_CLICK link=%s affiliate=%s clicks=%s", link["id"], link["affiliate_id"], row["clicks"])
    return int(row["clicks"])

def resolve_affiliate(cx, code: str, product_id: int):
    """(affiliate_id, tracking_code) when code names an active affiliate's link for this product."""
    link = find_link(cx, code, product_id)
    if not link:
        return None, None
    if not link["affiliate_active"]:
        log.info("AFF_ATTRIBUTION_SKIPPED inactive affiliate=%s", link["affiliate_id"])
        return None, None
    return int(link["affiliate_id"]), link["tracking_code"]

def ensure_link(cx, affiliate_id: int, product_id: int, profile_id: int):
    """Return the affiliate's link for the product, creating it on first use."""
    row = cx.execute(
        "SELECT * FROM affiliate_links WHERE affiliate_id=? AND product_id=?",
        (affiliate_id, product_id)
    ).fetchone()
    if row:
        return row
    code = make_tracking_code(profile_id, product_id)
    for _ in range(3):
        try:
            cx.execute(
                """INSERT INTO affiliate_links(affiliate_id, product_id, tracking_code, created_at)
                   VALUES(?,?,?,?)""",
                (affiliate_id, product_id, code, int(time.time()))
            )
            break
        except sqlite3.IntegrityError:
            # same millisecond as another link for this pair of ids
            code = f"{code}-{secrets.token_hex(2)}"
    else:
        raise RuntimeError("could not allocate a unique tracking code")
    log.info("AFF_LINK_CREATED affiliate=%s product=%s code=%s", affiliate_id, product_id, code)
    return cx.execute(
        "SELECT * FROM affiliate_links WHERE affiliate_id=? AND product_id=?",
        (affiliate_id, product_id)
    ).fetchone()
