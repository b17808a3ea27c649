from werkzeug.security import check_password_hash

from conftest import fetch, PASSWORD


def test_settings_requires_login(client, database):
    for url in ("/settings", "/settings/payments", "/settings/security", "/settings/notifications"):
        assert client.get(url).headers["Location"].endswith("/login")


def test_update_profile(client, seller, login):
    login(client, seller)
    r = client.post("/settings", data={"intent": "update-profile", "fullName": "Sam S.",
                                       "company": "Koala Co", "website": "https://koala.test", "phone": ""})
    assert r.headers["Location"].endswith("/settings?saved=profile")
    u = fetch("SELECT * FROM users WHERE id=?", (seller["id"],))
    assert u["full_name"] == "Sam S." and u["company"] == "Koala Co" and u["phone"] is None
    assert b"Saved." in client.get("/settings?saved=profile").data

    r = client.post("/settings", data={"intent": "update-profile", "fullName": "  "})
    assert r.status_code == 400 and b"Full name is required" in r.data


def test_stripe_gateway_is_saved_and_masked(client, seller, login):
    login(client, seller)
    r = client.post("/settings/payments", data={"intent": "add-stripe", "stripePublishableKey": "pk_live_abc123",
                                                "stripeSecretKey": "sk_live_supersecretvalue"})
    assert r.headers["Location"].endswith("/settings/payments?saved=1")
    g = fetch("SELECT * FROM payment_gateways WHERE user_id=?", (seller["id"],))
    assert g["gateway_type"] == "stripe" and g["mode"] == "live" and g["is_active"] == 1

    page = client.get("/settings/payments").data
    assert b"pk_live_abc123" in page
    assert b"sk_live_supersecretvalue" not in page

    # saving again replaces the keys of the same gateway
    client.post("/settings/payments", data={"intent": "add-stripe", "stripePublishableKey": "pk_test_x",
                                            "stripeSecretKey": "sk_test_y"})
    rows = fetch("SELECT COUNT(*) AS n, MAX(mode) AS mode FROM payment_gateways")
    assert rows["n"] == 1 and rows["mode"] == "sandbox"


def test_gateway_errors(client, seller, login):
    login(client, seller)
    r = client.post("/settings/payments", data={"intent": "add-stripe", "stripePublishableKey": "pk_test_x"})
    assert r.status_code == 400 and b"Stripe keys are required" in r.data
    r = client.post("/settings/payments", data={"intent": "add-paypal", "paypalClientId": "abc"})
    assert r.status_code == 400 and b"PayPal credentials are required" in r.data
    r = client.post("/settings/payments", data={"intent": "add-square"})
    assert r.status_code == 400 and b"Invalid action" in r.data
    r = client.post("/settings", data={"intent": "toggle-gateway", "gatewayId": "999", "isActive": "false"})
    assert r.status_code == 400 and b"Failed to update gateway status" in r.data


def test_paypal_gateway_and_toggle(client, seller, login):
    login(client, seller)
    client.post("/settings", data={"intent": "add-paypal", "paypalClientId": "client-1",
                                   "paypalClientSecret": "shh-very-secret", "paypalMode": "weird"})
    g = fetch("SELECT * FROM payment_gateways")
    assert g["gateway_type"] == "paypal" and g["mode"] == "sandbox"

    r = client.post("/settings", data={"intent": "toggle-gateway", "gatewayId": str(g["id"]), "isActive": "false"})
    assert r.headers["Location"].endswith("/settings?saved=gateway")
    assert fetch("SELECT is_active FROM payment_gateways")["is_active"] == 0


def test_gateway_toggle_is_scoped_to_owner(client, seller, make_user, login):
    login(client, seller)
    client.post("/settings/payments", data={"intent": "add-stripe", "stripePublishableKey": "pk_test_x",
                                            "stripeSecretKey": "sk_test_y"})
    gid = fetch("SELECT id FROM payment_gateways")["id"]
    login(client, make_user("rival@shop.test", role="admin"))
    r = client.post("/settings/payments", data={"intent": "toggle-gateway", "gatewayId": str(gid), "isActive": "false"})
    assert r.status_code == 400
    assert fetch("SELECT is_active FROM payment_gateways")["is_active"] == 1


def test_change_password(client, seller, login):
    login(client, seller)
    form = {"currentPassword": PASSWORD, "newPassword": "newpass1", "confirmPassword": "newpass1"}
    cases = [
        (dict(form, currentPassword=""), b"Current and new password are required"),
        (dict(form, currentPassword="wrong-one"), b"Current password is incorrect"),
        (dict(form, newPassword="abc", confirmPassword="abc"), b"Password must be at least 6 characters"),
        (dict(form, confirmPassword="different"), b"Passwords do not match"),
    ]
    for data, message in cases:
        r = client.post("/settings/security", data=data)
        assert r.status_code == 400 and message in r.data

    r = client.post("/settings/security", data=form)
    assert r.headers["Location"].endswith("/settings/security?saved=1")
    u = fetch("SELECT password_hash FROM users WHERE id=?", (seller["id"],))
    assert check_password_hash(u["password_hash"], "newpass1")

    client.post("/logout")
    r = client.post("/login", data={"email": "seller@shop.test", "password": "newpass1"})
    assert r.status_code == 302


def test_notification_preferences(client, seller, login):
    login(client, seller)
    u = fetch("SELECT * FROM users WHERE id=?", (seller["id"],))
    assert u["email_frequency"] == "instant" and u["notify_sales"] == 1

    r = client.post("/settings/notifications", data={"emailFrequency": "weekly", "notifyAffiliates": "on"})
    assert r.headers["Location"].endswith("/settings/notifications?saved=1")
    u = fetch("SELECT * FROM users WHERE id=?", (seller["id"],))
    assert u["email_frequency"] == "weekly"
    assert u["notify_sales"] == 0 and u["notify_affiliates"] == 1

    r = client.post("/settings/notifications", data={"emailFrequency": "hourly"})
    assert r.status_code == 400


def test_sale_notice_respects_preference(seller, make_product, monkeypatch):
    import db
    import emailer
    from orders import create_order, get_order
    sent = []
    monkeypatch.setattr(emailer, "send_email", lambda to, subject, html, reply_to=None: sent.append(to) or True)
    p = make_product(seller)
    with db.conn() as cx:
        order = get_order(cx, create_order(cx, p, "b@shop.test", "B"))

    assert emailer.send_sale_notice(fetch("SELECT * FROM users WHERE id=?", (seller["id"],)), order, p) is True
    with db.conn() as cx:
        cx.execute("UPDATE users SET notify_sales=0 WHERE id=?", (seller["id"],))
    assert emailer.send_sale_notice(fetch("SELECT * FROM users WHERE id=?", (seller["id"],)), order, p) is False
    assert sent == ["seller@shop.test"]
