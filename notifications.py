"""
Outbound notifications: invoice and contact emails through SendGrid, and
order and contact summaries posted to the shop's Telegram group.

Both are best effort. They run side by side, each under a timeout, and a
failure in either is logged and never reaches the caller.
"""
import html
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Callable, Dict

import requests
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

import config

logger = logging.getLogger(__name__)

SENT = "sent"
SKIPPED = "skipped"
FAILED = "failed"
TIMED_OUT = "timeout"

CONTACT_SUBJECTS = {
    "signature-sunglasses": "Signature Sunglasses Inquiry",
    "standard-sunglasses": "Essentials Sunglasses Inquiry",
    "product-recommendation": "Product Recommendation",
    "order-status": "Order Status",
    "warranty-support": "Warranty & Support",
    "size-fitting": "Size & Fitting",
    "other": "Other",
}

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="notify")


def mail_client() -> SendGridAPIClient:
    sg = SendGridAPIClient(config.SENDGRID_API_KEY)
    # python_http_client passes this on to every request it builds
    sg.client.timeout = config.NOTIFY_TIMEOUT
    return sg


def _send_email(to: str, subject: str, html_content: str):
    message = Mail(from_email=config.FROM_EMAIL, to_emails=to, subject=subject, html_content=html_content)
    return mail_client().send(message)


def _post_chat(text: str):
    response = requests.post(
        f"https://api.telegram.org/bot{config.TELEGRAM_BOT_TOKEN}/sendMessage",
        json={"chat_id": config.TELEGRAM_GROUP_ID, "text": text, "parse_mode": "HTML"},
        timeout=config.NOTIFY_TIMEOUT,
    )
    response.raise_for_status()
    return response


def _chat_configured() -> bool:
    if not config.TELEGRAM_BOT_TOKEN or not config.TELEGRAM_GROUP_ID:
        logger.warning("Telegram bot token or chat ID not configured")
        return False
    return True


def render_invoice(order: Dict[str, Any]) -> str:
    rows = "".join(
        "<tr>"
        f"<td>{html.escape(item['name'])}</td>"
        f"<td style=\"text-align:center\">{html.escape(item.get('color') or '-')}</td>"
        f"<td style=\"text-align:center\">{item['quantity']}</td>"
        f"<td style=\"text-align:right\">${item['price']:.2f}</td>"
        "</tr>"
        for item in order.get("items", [])
    )
    year = datetime.now(timezone.utc).year
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">"
        "<h2>Thank you for your purchase!</h2>"
        f"<p>Your order <b>#{html.escape(order['order_number'])}</b> has been received and paid successfully.</p>"
        "<table width=\"100%\" cellpadding=\"4\" style=\"border-collapse: collapse;\">"
        "<thead><tr><th align=\"left\">Product</th><th>Color</th><th>Quantity</th><th align=\"right\">Price</th></tr></thead>"
        f"<tbody>{rows}</tbody></table>"
        f"<p style=\"text-align:right; font-weight:600;\">Total: ${float(order.get('total_amount') or 0):.2f}</p>"
        "<p>If you have any questions about your order, simply reply to this email.</p>"
        f"<p style=\"color:#aaa; font-size:13px;\">&copy; {year} Lens Aura. All rights reserved.</p>"
        "</div>"
    )


def send_invoice_email(order: Dict[str, Any]) -> str:
    to = order.get("customer_email")
    if not to:
        logger.warning("Order %s has no customer email, invoice not sent", order.get("order_number"))
        return SKIPPED
    if not config.SENDGRID_API_KEY:
        logger.warning("SENDGRID_API_KEY not set, invoice for %s not sent", order.get("order_number"))
        return SKIPPED
    response = _send_email(to, f"Your Invoice for Order #{order['order_number']}", render_invoice(order))
    logger.info("Invoice for %s sent to %s (status %s)", order["order_number"], to, response.status_code)
    return SENT


def format_chat_message(order: Dict[str, Any]) -> str:
    address = order.get("shipping_address") or {}
    name = f"{address.get('first_name') or ''} {address.get('last_name') or ''}".strip() or "Not provided"
    lines = [
        "<b>NEW ORDER RECEIVED</b>",
        f"Order #: <code>{html.escape(order['order_number'])}</code>",
        f"Total: <b>${float(order.get('total_amount') or 0):.2f}</b>",
        f"Status: <b>{str(order.get('payment_status', '')).upper()}</b>",
        "",
        f"Customer: {html.escape(name)}",
        f"Email: {html.escape(order.get('customer_email') or 'Not provided')}",
        f"Phone: {html.escape(order.get('customer_phone') or 'Not provided')}",
        "",
        "<b>Items</b>",
    ]
    for idx, item in enumerate(order.get("items", []), start=1):
        lines.append(
            f"{idx}. {html.escape(item['name'])} ({html.escape(item.get('color') or 'N/A')}) "
            f"x{item['quantity']} @ ${item['price']:.2f}"
        )
    lines.append("")
    lines.append(f"Session: <code>{html.escape(order.get('stripe_session_id') or '')}</code>")
    return "\n".join(lines)


def send_chat_notification(order: Dict[str, Any]) -> str:
    if not _chat_configured():
        return SKIPPED
    _post_chat(format_chat_message(order))
    logger.info("Order %s posted to Telegram", order["order_number"])
    return SENT


# --- Contact form ---

def subject_label(subject: str) -> str:
    return CONTACT_SUBJECTS.get(subject, subject)


def render_contact_confirmation(contact: Dict[str, Any]) -> str:
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">"
        "<h2>Thank you for contacting Lens Aura!</h2>"
        f"<p>Dear {html.escape(contact['name'])},</p>"
        "<p>We have received your message and will get back to you as soon as possible.</p>"
        "<div style=\"background-color: #f5f5f5; padding: 15px;\">"
        f"<p><strong>Subject:</strong> {html.escape(subject_label(contact['subject']))}</p>"
        f"<p><strong>Message:</strong></p><p>{html.escape(contact['message'])}</p>"
        "</div>"
        "<p>Best regards,<br>Lens Aura Team</p>"
        "</div>"
    )


def render_contact_admin(contact: Dict[str, Any]) -> str:
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">"
        "<h2>New Contact Form Submission</h2>"
        f"<p><strong>From:</strong> {html.escape(contact['name'])} ({html.escape(contact['email'])})</p>"
        f"<p><strong>Subject:</strong> {html.escape(subject_label(contact['subject']))}</p>"
        f"<p><strong>Message:</strong></p><p>{html.escape(contact['message'])}</p>"
        "</div>"
    )


def send_contact_emails(contact: Dict[str, Any]) -> str:
    """Confirmation to the customer plus a copy to the shop inbox."""
    if not config.SENDGRID_API_KEY:
        logger.warning("SENDGRID_API_KEY not set, contact emails from %s not sent", contact["email"])
        return SKIPPED
    _send_email(contact["email"], "Thank you for contacting Lens Aura", render_contact_confirmation(contact))
    _send_email(config.CONTACT_EMAIL, f"New Contact Form Submission: {subject_label(contact['subject'])}",
                render_contact_admin(contact))
    logger.info("Contact emails sent for %s", contact["email"])
    return SENT


def format_contact_message(contact: Dict[str, Any]) -> str:
    return "\n".join([
        "<b>New Contact Form Submission</b>",
        "",
        f"From: <b>{html.escape(contact['name'])}</b>",
        f"Email: <code>{html.escape(contact['email'])}</code>",
        f"Subject: <b>{html.escape(subject_label(contact['subject']))}</b>",
        "",
        "<b>Message:</b>",
        html.escape(contact["message"]),
        "",
        f"Reply to customer: {html.escape(contact['email'])}",
        f"View contact form: {html.escape(config.FRONTEND_URL.rstrip('/'))}/contact",
    ])


def send_contact_chat(contact: Dict[str, Any]) -> str:
    if not _chat_configured():
        return SKIPPED
    _post_chat(format_contact_message(contact))
    logger.info("Contact message from %s posted to Telegram", contact["email"])
    return SENT


# --- Fan-out ---

def _fan_out(label: str, senders: Dict[str, Callable[[Dict[str, Any]], str]], payload: Dict[str, Any],
             timeout: float = None) -> Dict[str, str]:
    timeout = config.NOTIFY_TIMEOUT if timeout is None else timeout
    futures = {channel: _executor.submit(send, payload) for channel, send in senders.items()}
    wait(futures.values(), timeout=timeout)

    outcome = {}
    for channel, future in futures.items():
        if not future.done():
            future.cancel()
            logger.error("%s notification for %s timed out", channel, label)
            outcome[channel] = TIMED_OUT
            continue
        try:
            outcome[channel] = future.result()
        except Exception:
            logger.exception("%s notification for %s failed", channel, label)
            outcome[channel] = FAILED
    return outcome


def dispatch_payment_notifications(order: Dict[str, Any], timeout: float = None) -> Dict[str, str]:
    """Send invoice and chat notification in parallel; report the outcome of each."""
    senders = {"email": send_invoice_email, "chat": send_chat_notification}
    return _fan_out(order.get("order_number"), senders, order, timeout)


def dispatch_contact_notifications(contact: Dict[str, Any], timeout: float = None) -> Dict[str, str]:
    senders = {"email": send_contact_emails, "chat": send_contact_chat}
    return _fan_out(f"contact from {contact.get('email')}", senders, contact, timeout)
