# emailer.py
import os, smtplib, ssl, sys
from html import escape
from email.message import EmailMessage

SMTP_HOST  = os.getenv("SMTP_HOST", "")                 # e.g. smtp.gmail.com
SMTP_PORT  = int(os.getenv("SMTP_PORT", "587"))         # 587 STARTTLS, 465 SSL
SMTP_USER  = os.getenv("SMTP_USER", "")                 # e.g. hello@koalacart.app
SMTP_PASS  = (os.getenv("SMTP_PASS", "")).replace(" ", "")  # strip spaces in app password

# From address: prefer FROM_EMAIL, else fall back to SMTP_USER
FROM_EMAIL = os.getenv("FROM_EMAIL") or SMTP_USER or "no-reply@koalacart.app"
APP_NAME   = os.getenv("APP_NAME", "KoalaCart")

def _smtp_client():
    if not SMTP_HOST:
        raise RuntimeError("SMTP_HOST not set")
    if SMTP_PORT == 465:
        server = smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, context=ssl.create_default_context(), timeout=20)
    else:
        server = smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=20)
        server.ehlo()
        try:
            server.starttls(context=ssl.create_default_context())
            server.ehlo()
        except smtplib.SMTPException:
            # some providers negotiate TLS on their own
            pass
    if SMTP_USER:
        server.login(SMTP_USER, SMTP_PASS)
    return server

def send_email(to: str, subject: str, html: str, reply_to: str | None = None) -> bool:
    """
    Send an HTML email with a text fallback.
    Returns True/False and reports failures on stderr.
    """
    if not to:
        print("send_email: missing recipient", file=sys.stderr)
        return False
    if not SMTP_HOST:
        print("send_email: SMTP not configured. Need SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS", file=sys.stderr)
        return False

    try:
        msg = EmailMessage()
        msg["From"] = FROM_EMAIL
        msg["To"] = to
        msg["Subject"] = subject
        if reply_to:
            msg["Reply-To"] = reply_to

        text_fallback = (html or "").replace("<br>", "\n").replace("<br/>", "\n")
        msg.set_content(text_fallback or " ")
        msg.add_alternative(html or "<p></p>", subtype="html")

        with _smtp_client() as s:
            s.send_message(msg)

        print(f"EMAIL_SENT to={to!r} subject={subject!r} reply_to={reply_to!r}", file=sys.stderr)
        return True
    except Exception as e:
        print("send_email error:", repr(e), file=sys.stderr)
        print(f"SMTP_DEBUG host={SMTP_HOST} port={SMTP_PORT} user_set={bool(SMTP_USER)} from={FROM_EMAIL!r}", file=sys.stderr)
        return False

# ----------------- MESSAGES -----------------
def send_order_confirmation(order, product, status_url: str, seller_email: str | None = None) -> bool:
    name = escape(order["customer_name"] or "there")
    title = escape(product["name"])
    download = ""
    if product["product_type"] == "digital" and product["download_url"]:
        download = f'<p><a href="{escape(product["download_url"])}">Download {title}</a></p>'
    return send_email(
        order["customer_email"],
        f"Your {APP_NAME} order is confirmed",
        f"""
            <h2>Thanks for your order, {name}!</h2>
            <p><strong>Product:</strong> {title}</p>
            <p><strong>Total:</strong> {order['amount']:.2f} {escape(order['currency'])}</p>
            <p><strong>Order:</strong> {escape(order['id'])}</p>
            {download}
            <p>You can check your order at any time: <a href="{escape(status_url)}">{escape(status_url)}</a></p>
        """,
        reply_to=seller_email,
    )

def send_sale_notice(seller, order, product, affiliate_name: str | None = None) -> bool:
    if not seller or not seller["email"]:
        return False
    try:
        if not seller["notify_sales"]:
            return False
    except (IndexError, KeyError):
        pass
    via = f"<p><strong>Referred by:</strong> {escape(affiliate_name)}</p>" if affiliate_name else ""
    return send_email(
        seller["email"],
        f"New sale: {product['name']} ({order['amount']:.2f} {order['currency']})",
        f"""
            <h2>You made a sale</h2>
            <p><strong>Product:</strong> {escape(product['name'])}</p>
            <p><strong>Buyer:</strong> {escape(order['customer_name'] or '')} &lt;{escape(order['customer_email'])}&gt;</p>
            <p><strong>Amount:</strong> {order['amount']:.2f} {escape(order['currency'])}</p>
            {via}
        """,
        reply_to=order["customer_email"],
    )

def send_affiliate_invite(email: str, full_name: str, seller_name: str, rate_percent: float, register_url: str) -> bool:
    return send_email(
        email,
        f"{seller_name} invited you to their {APP_NAME} affiliate program",
        f"""
            <h2>Hi {escape(full_name or '')},</h2>
            <p>{escape(seller_name)} added you as an affiliate with a
               <strong>{rate_percent:g}%</strong> commission on every sale you refer.</p>
            <p>Create your password to see your links and earnings:
               <a href="{escape(register_url)}">{escape(register_url)}</a></p>
        """,
    )
