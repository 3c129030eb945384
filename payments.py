"""
Payment correlation with the Razorpay gateway.

A Payment row is created alongside its Order by the order workflow. This module
attaches gateway intents to it, verifies callback signatures and records
failures and refunds. Stock is never adjusted here.
"""
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from pymongo import ReturnDocument

from database import to_object_id, utcnow
from errors import AuthError, ConflictError, GatewayError, NotFoundError, ValidationError
from notifications import Defer, NotificationSink, schedule

logger = logging.getLogger(__name__)


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(razorpay_order_id: str, razorpay_payment_id: str, signature: str, secret: str) -> bool:
    expected = _hmac_hex(secret, f"{razorpay_order_id}|{razorpay_payment_id}".encode())
    return hmac.compare_digest(expected, signature or "")


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    return hmac.compare_digest(_hmac_hex(secret, body), signature or "")


class PaymentGateway:
    """What the service needs from a payment provider."""

    def create_order(self, amount: int, currency: str, receipt: str) -> Dict[str, Any]:
        raise NotImplementedError

    def refund(self, payment_id: str, amount: Optional[int] = None) -> Dict[str, Any]:
        raise NotImplementedError


class RazorpayGateway(PaymentGateway):
    def __init__(self, key_id: str, key_secret: str):
        # The SDK is only needed once keys are configured.
        import razorpay

        self.client = razorpay.Client(auth=(key_id, key_secret))

    def create_order(self, amount: int, currency: str, receipt: str) -> Dict[str, Any]:
        return self.client.order.create({"amount": amount, "currency": currency, "receipt": receipt})

    def refund(self, payment_id: str, amount: Optional[int] = None) -> Dict[str, Any]:
        data = {"amount": amount} if amount else {}
        return self.client.payment.refund(payment_id, data)


class PaymentService:
    def __init__(self, database, gateway: Optional[PaymentGateway], notifier: Optional[NotificationSink] = None,
                 mailer=None, key_secret: Optional[str] = None, webhook_secret: Optional[str] = None,
                 currency: str = "INR"):
        self.db = database
        self.gateway = gateway
        self.notifier = notifier or NotificationSink()
        self.mailer = mailer
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.currency = currency

    def _order_for_caller(self, order_id, caller: Optional[dict], email: Optional[str]) -> Dict[str, Any]:
        order = self.db["order"].find_one({"_id": to_object_id(order_id, "Order")})
        if not order:
            raise NotFoundError("Order not found")
        if caller and caller.get("is_admin"):
            return order
        if order.get("user_id") is not None:
            owned = caller is not None and caller["_id"] == order["user_id"]
        else:
            guest_email = (order.get("guest") or {}).get("email") or ""
            owned = bool(email) and guest_email.lower() == email.strip().lower()
        if not owned:
            raise NotFoundError("Order not found")
        return order

    def _call_gateway(self, what: str, fn, *args):
        if self.gateway is None:
            raise GatewayError("Razorpay not configured")
        try:
            return fn(*args)
        except Exception as exc:
            logger.exception("Razorpay %s failed", what)
            raise GatewayError(f"Payment gateway {what} failed") from exc

    def create_intent(self, order_id, caller: Optional[dict] = None, email: Optional[str] = None) -> Dict[str, Any]:
        """Opens (or re-opens) a gateway payment for the order's total."""
        order = self._order_for_caller(order_id, caller, email)
        if order.get("payment_method") != "Razorpay":
            raise ValidationError("Order is not payable online")
        if order.get("status") == "Cancelled":
            raise ConflictError("Order is cancelled")
        payment = self.db["payment"].find_one({"order_id": order["_id"]})
        if payment and payment.get("status") in ("Paid", "Refunded"):
            raise ConflictError("Order is already paid")

        gateway_order = self._call_gateway(
            "order creation",
            lambda: self.gateway.create_order(
                int(round(order["total"] * 100)), self.currency, f"order_{order['_id']}"
            ),
        )
        now = utcnow()
        self.db["payment"].find_one_and_update(
            {"order_id": order["_id"]},
            {
                "$set": {
                    "razorpay_order_id": gateway_order["id"],
                    "razorpay_payment_id": None,
                    "razorpay_signature": None,
                    "amount": order["total"],
                    "currency": self.currency,
                    "status": "Pending",
                    "updated_at": now,
                },
                "$inc": {"attempts": 1},
                "$setOnInsert": {"provider": "Razorpay", "created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        self.db["order"].update_one(
            {"_id": order["_id"]},
            {"$set": {"razorpay_order_id": gateway_order["id"], "payment_status": "Pending", "updated_at": now}},
        )
        logger.info("Gateway order %s opened for order %s", gateway_order["id"], order["_id"])
        return gateway_order

    def confirm(self, razorpay_order_id: str, razorpay_payment_id: str, signature: str,
                defer: Optional[Defer] = None) -> Dict[str, Any]:
        """Verifies a checkout callback and marks payment and order Paid."""
        if not self.key_secret:
            raise GatewayError("Razorpay not configured")
        if not verify_payment_signature(razorpay_order_id, razorpay_payment_id, signature, self.key_secret):
            raise ValidationError("Invalid signature", fields=["razorpaySignature"])

        payment = self.db["payment"].find_one({"razorpay_order_id": razorpay_order_id})
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.get("status") == "Paid" and payment.get("razorpay_payment_id") == razorpay_payment_id:
            return payment
        if payment.get("status") != "Pending":
            raise ConflictError(f"Payment is already {payment.get('status')}")

        now = utcnow()
        updated = self.db["payment"].find_one_and_update(
            {"_id": payment["_id"], "status": "Pending", "razorpay_order_id": razorpay_order_id},
            {"$set": {
                "razorpay_payment_id": razorpay_payment_id,
                "razorpay_signature": signature,
                "status": "Paid",
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConflictError("Payment changed concurrently")

        order_filter = {"_id": payment["order_id"]}
        self.db["order"].update_one(order_filter, {"$set": {"payment_status": "Paid", "updated_at": now}})
        self.db["order"].update_one({**order_filter, "status": "Created"}, {"$set": {"status": "Paid"}})
        order = self.db["order"].find_one(order_filter)
        logger.info("Payment %s verified for order %s", razorpay_payment_id, payment["order_id"])

        if order:
            schedule(defer, self.notifier.publish_order_update, order)
        if self.mailer is not None:
            schedule(defer, self.mailer.send_order_invoice, payment["order_id"])
        return updated

    def report_failure(self, razorpay_order_id: str, caller: Optional[dict], email: Optional[str],
                       payload: Optional[Dict[str, Any]] = None, defer: Optional[Defer] = None) -> Dict[str, Any]:
        payment = self.db["payment"].find_one({"razorpay_order_id": razorpay_order_id})
        if not payment:
            raise NotFoundError("Payment not found")
        self._order_for_caller(payment["order_id"], caller, email)
        return self.mark_failed(razorpay_order_id, payload, defer) or payment

    def mark_failed(self, razorpay_order_id: str, payload: Optional[Dict[str, Any]] = None,
                    defer: Optional[Defer] = None) -> Optional[Dict[str, Any]]:
        """Records a failed attempt. Only a pending payment can fail; stock stays reserved."""
        now = utcnow()
        payment = self.db["payment"].find_one_and_update(
            {"razorpay_order_id": razorpay_order_id, "status": "Pending"},
            {"$set": {"status": "Failed", "raw_payload": payload, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if payment is None:
            logger.info("Ignoring failure for %s: no pending payment", razorpay_order_id)
            return None
        order = self.db["order"].find_one_and_update(
            {"_id": payment["order_id"]},
            {"$set": {"payment_status": "Failed", "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Payment for order %s marked Failed", payment["order_id"])
        if order:
            schedule(defer, self.notifier.publish_order_update, order)
        return payment

    def refund(self, razorpay_payment_id: str, amount: Optional[int] = None,
               defer: Optional[Defer] = None) -> Dict[str, Any]:
        payment = self.db["payment"].find_one({"razorpay_payment_id": razorpay_payment_id})
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.get("status") != "Paid":
            raise ConflictError("Only paid payments can be refunded")

        refund = self._call_gateway("refund", lambda: self.gateway.refund(razorpay_payment_id, amount))
        now = utcnow()
        self.db["payment"].update_one(
            {"_id": payment["_id"]},
            {"$set": {"status": "Refunded", "raw_payload": refund, "updated_at": now}},
        )
        order = self.db["order"].find_one_and_update(
            {"_id": payment["order_id"]},
            {"$set": {"payment_status": "Refunded", "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Payment %s refunded", razorpay_payment_id)
        if order:
            schedule(defer, self.notifier.publish_order_update, order)
        return refund

    def handle_webhook(self, body: bytes, signature: Optional[str], defer: Optional[Defer] = None) -> Dict[str, Any]:
        if not self.webhook_secret:
            logger.warning("Accepting unsigned Razorpay webhook; RAZORPAY_WEBHOOK_SECRET is not set")
        elif not verify_webhook_signature(body, signature, self.webhook_secret):
            raise AuthError("Invalid webhook signature")
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            raise ValidationError("Malformed webhook payload")

        event = payload.get("event")
        entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
        razorpay_order_id = entity.get("order_id")
        logger.info("Razorpay webhook %s for %s", event, razorpay_order_id)

        if razorpay_order_id and event == "payment.failed":
            self.mark_failed(razorpay_order_id, payload, defer)
        elif razorpay_order_id and event == "payment.captured":
            self.db["payment"].update_one(
                {"razorpay_order_id": razorpay_order_id},
                {"$set": {"raw_payload": payload, "updated_at": utcnow()}},
            )
        return {"received": True}
