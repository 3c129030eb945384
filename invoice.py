"""
Order confirmation ("invoice") email.

Sent after a COD order is placed or a gateway payment is verified. When SMTP is
not configured the message is written to the log instead.
"""
import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import config
from database import to_object_id

logger = logging.getLogger(__name__)


def format_currency(value: Any) -> str:
    return f"₹{float(value or 0):.2f}"


def send_email(to: str, subject: str, html_body: str, text: str) -> None:
    if not (config.SMTP_HOST and config.SMTP_USER and config.SMTP_PASS):
        logger.info("Email transport not configured; would send %r to %s:\n%s", subject, to, text)
        return

    message = EmailMessage()
    message["From"] = config.EMAIL_FROM
    message["To"] = to
    message["Subject"] = subject
    message.set_content(text)
    message.add_alternative(html_body, subtype="html")

    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=30) as smtp:
        smtp.starttls()
        smtp.login(config.SMTP_USER, config.SMTP_PASS)
        smtp.send_message(message)
    logger.info("Sent %r to %s", subject, to)


class InvoiceMailer:
    def __init__(self, database, sender=send_email):
        self.db = database
        self.sender = sender

    def recipient_for(self, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if order.get("user_id") is not None:
            user = self.db["user"].find_one({"_id": order["user_id"]}, {"name": 1, "email": 1})
            if user and user.get("email"):
                return {"email": user["email"], "name": user.get("name")}
            return None
        guest = order.get("guest") or {}
        if guest.get("email"):
            return {"email": guest["email"], "name": guest.get("name")}
        return None

    def send_order_invoice(self, order_id) -> None:
        order = self.db["order"].find_one({"_id": to_object_id(order_id, "Order")})
        if not order:
            logger.warning("Invoice skipped: order %s not found", order_id)
            return
        recipient = self.recipient_for(order)
        if not recipient:
            logger.warning("Invoice skipped: no email for order %s", order_id)
            return

        lines = self._lines(order)
        subject = f"Order confirmed #{order['_id']}"
        self.sender(recipient["email"], subject, render_html(order, lines, recipient.get("name")), render_text(order, lines))

    def _lines(self, order: Dict[str, Any]) -> List[Dict[str, Any]]:
        items = order.get("items", [])
        products = {
            p["_id"]: p
            for p in self.db["product"].find({"_id": {"$in": [it["product_id"] for it in items]}}, {"title": 1})
        }
        variants = {
            v["_id"]: v
            for v in self.db["variant"].find({"_id": {"$in": [it["variant_id"] for it in items]}}, {"size": 1, "color": 1, "sku": 1})
        }
        lines = []
        for it in items:
            product = products.get(it["product_id"]) or {}
            variant = variants.get(it["variant_id"]) or {}
            meta = [
                f"Size: {variant['size']}" if variant.get("size") else "",
                f"Color: {variant['color']}" if variant.get("color") else "",
                f"SKU: {variant['sku']}" if variant.get("sku") else "",
            ]
            lines.append({
                "title": product.get("title") or "Product",
                "meta": " | ".join(m for m in meta if m),
                "quantity": it["quantity"],
                "price": it["price_snapshot"],
            })
        return lines


def _address_lines(order: Dict[str, Any]) -> List[str]:
    address = order.get("address") or {}
    city_state = f"{address.get('city') or ''} {address.get('state') or ''}".strip()
    parts = [
        address.get("name"), address.get("line1"), address.get("line2"), city_state,
        address.get("postal_code"), address.get("country"), address.get("phone"),
    ]
    return [p for p in parts if p]


def render_text(order: Dict[str, Any], lines: List[Dict[str, Any]]) -> str:
    total_items = sum(line["quantity"] for line in lines)
    rows = [f"- {line['title']} x{line['quantity']} @ {format_currency(line['price'])}" for line in lines]
    return "\n".join([
        f"Order #{order['_id']}",
        f"Total Items: {total_items}",
        *rows,
        f"Subtotal: {format_currency(order.get('subtotal'))}",
        f"Shipping: {format_currency(order.get('shipping_fee'))}",
        f"Tax: {format_currency(order.get('tax'))}",
        f"Total: {format_currency(order.get('total'))}",
    ])


def render_html(order: Dict[str, Any], lines: List[Dict[str, Any]], name: Optional[str]) -> str:
    esc = html.escape
    rows = "".join(
        f"<tr><td>{esc(line['title'])}"
        + (f"<div style=\"font-size:12px;color:#777;\">{esc(line['meta'])}</div>" if line["meta"] else "")
        + f"</td><td align=\"center\">{line['quantity']}</td>"
        f"<td align=\"right\">{format_currency(line['price'])}</td></tr>"
        for line in lines
    )
    address = "<br/>".join(esc(str(p)) for p in _address_lines(order))
    address_block = ""
    if address:
        address_block = f"<p style=\"margin-top:16px;\"><b>Shipping Address</b><br/>{address}</p>"
    return f"""
<div style="font-family:Arial,sans-serif;max-width:640px;margin:0 auto;padding:20px;">
  <h2 style="color:#2563eb;text-align:center;">{esc(config.STORE_NAME)}</h2>
  <p>Hi {esc(name or 'there')},<br/>Your order has been placed successfully.</p>
  <p>Order <b>#{order['_id']}</b> &middot; Payment: {esc(order.get('payment_method') or '')}</p>
  <table width="100%" cellpadding="4" cellspacing="0" style="font-size:13px;">
    <thead><tr><th align="left">Product</th><th>Qty</th><th align="right">Price</th></tr></thead>
    <tbody>{rows}</tbody>
  </table>
  <table width="100%" style="margin-top:12px;font-size:14px;">
    <tr><td>Subtotal</td><td align="right">{format_currency(order.get('subtotal'))}</td></tr>
    <tr><td>Shipping</td><td align="right">{format_currency(order.get('shipping_fee'))}</td></tr>
    <tr><td>Tax</td><td align="right">{format_currency(order.get('tax'))}</td></tr>
    <tr><td><b>Total</b></td><td align="right"><b>{format_currency(order.get('total'))}</b></td></tr>
  </table>
  {address_block}
  <p style="text-align:center;margin-top:20px;"><a href="{esc(config.STORE_URL)}/account">View Order</a></p>
</div>
"""
