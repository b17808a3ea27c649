import re

import pytest

import db
import attribution
from attribution import make_tracking_code, ensure_link, find_link, record_click, resolve_affiliate
from conftest import fetch


def test_tracking_code_format():
    code = make_tracking_code(7, 300, now_ms=1_700_000_000_000)
    assert code.startswith("0007-012c-")
    assert re.fullmatch(r"[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-z]+", code)


def test_ensure_link_is_idempotent(seller, promoter, make_product, make_affiliate):
    p = make_product(seller)
    a = make_affiliate(promoter, seller)
    with db.conn() as cx:
        first = ensure_link(cx, a["id"], p["id"], promoter["id"])
        second = ensure_link(cx, a["id"], p["id"], promoter["id"])
    assert first["id"] == second["id"]
    assert fetch("SELECT COUNT(*) AS n FROM affiliate_links")["n"] == 1


def test_ensure_link_retries_on_code_collision(seller, promoter, make_product, make_affiliate, monkeypatch):
    p1 = make_product(seller, name="One")
    p2 = make_product(seller, name="Two")
    a = make_affiliate(promoter, seller)
    monkeypatch.setattr(attribution, "make_tracking_code", lambda *args, **kw: "0001-0001-same")
    with db.conn() as cx:
        l1 = ensure_link(cx, a["id"], p1["id"], promoter["id"])
        l2 = ensure_link(cx, a["id"], p2["id"], promoter["id"])
    assert l1["tracking_code"] == "0001-0001-same"
    assert l2["tracking_code"].startswith("0001-0001-same-")


def test_record_click_updates_event_log_and_both_counters(seller, promoter, make_product, make_affiliate):
    p = make_product(seller)
    a = make_affiliate(promoter, seller)
    with db.conn() as cx:
        link = ensure_link(cx, a["id"], p["id"], promoter["id"])
        assert record_click(cx, link, visitor_key="v1", ip="10.0.0.1", user_agent="pytest") == 1
        assert record_click(cx, link, visitor_key="v2") == 2

    assert fetch("SELECT clicks FROM affiliate_links WHERE id=?", (link["id"],))["clicks"] == 2
    assert fetch("SELECT total_clicks FROM affiliates WHERE id=?", (a["id"],))["total_clicks"] == 2
    events = fetch("SELECT COUNT(*) AS n FROM affiliate_clicks WHERE link_id=?", (link["id"],))
    assert events["n"] == 2


def test_find_link_joins_affiliate_details(seller, promoter, make_product, make_affiliate):
    p = make_product(seller)
    a = make_affiliate(promoter, seller, rate=0.2)
    with db.conn() as cx:
        link = ensure_link(cx, a["id"], p["id"], promoter["id"])
        row = find_link(cx, link["tracking_code"])
    assert row["affiliate_name"] == "Ada Affiliate"
    assert row["commission_rate"] == pytest.approx(0.2)
    assert row["admin_id"] == seller["id"]


def test_resolve_affiliate(seller, promoter, make_product, make_affiliate):
    p = make_product(seller)
    other = make_product(seller, name="Other")
    a = make_affiliate(promoter, seller)
    with db.conn() as cx:
        link = ensure_link(cx, a["id"], p["id"], promoter["id"])
        assert resolve_affiliate(cx, link["tracking_code"], p["id"]) == (a["id"], link["tracking_code"])
        # a code only counts for the product it was issued for
        assert resolve_affiliate(cx, link["tracking_code"], other["id"]) == (None, None)
        assert resolve_affiliate(cx, "nope", p["id"]) == (None, None)
        assert resolve_affiliate(cx, "", p["id"]) == (None, None)


def test_inactive_affiliate_is_never_attributed(seller, promoter, make_product, make_affiliate):
    p = make_product(seller)
    a = make_affiliate(promoter, seller, is_active=0)
    with db.conn() as cx:
        link = ensure_link(cx, a["id"], p["id"], promoter["id"])
        assert resolve_affiliate(cx, link["tracking_code"], p["id"]) == (None, None)
