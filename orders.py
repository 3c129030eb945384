"""Order placement and the order lifecycle."""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from cart import CartService
from database import create_document, to_object_id, utcnow
from errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from inventory import VariantStore
from notifications import Defer, NotificationSink, schedule
from schemas import GuestContact, Order, OrderItem, Payment, PlaceOrderRequest

logger = logging.getLogger(__name__)

STATUS_PROGRESSION = ["Created", "Paid", "Packed", "Shipped", "Delivered"]
RESTOCKABLE_STATUSES = ("Created", "Paid", "Packed")

# (attribute, wire name)
REQUIRED_ADDRESS_FIELDS = [
    ("name", "name"),
    ("phone", "phone"),
    ("line1", "line1"),
    ("city", "city"),
    ("state", "state"),
    ("postal_code", "postalCode"),
    ("country", "country"),
]

PAYMENT_METHODS = {"COD": "COD", "RAZORPAY": "Razorpay"}

COMPENSATION_ATTEMPTS = 3


def can_transition(current: str, target: str) -> bool:
    if current in ("Delivered", "Cancelled"):
        return False
    if target == "Cancelled":
        return True
    if target not in STATUS_PROGRESSION:
        return False
    return STATUS_PROGRESSION.index(target) > STATUS_PROGRESSION.index(current)


@dataclass
class OrderPlan:
    """A checkout that passed validation."""
    user_id: Optional[ObjectId]
    guest: Optional[Dict[str, Any]]
    lines: List[Tuple[ObjectId, int]]
    address: Dict[str, Any]
    shipping_fee: float
    tax: float
    payment_method: str


@dataclass
class _Journal:
    reserved: List[Tuple[ObjectId, int, Dict[str, Any]]] = field(default_factory=list)
    order_id: Optional[ObjectId] = None
    payment_id: Optional[ObjectId] = None


class OrderWorkflow:
    def __init__(self, database, notifier: Optional[NotificationSink] = None, mailer=None,
                 transactions: bool = True, currency: str = "INR"):
        self.db = database
        self.notifier = notifier or NotificationSink()
        self.mailer = mailer
        self.transactions = transactions
        self.currency = currency
        self.variants = VariantStore(database, self.notifier)
        self.carts = CartService(database, self.variants)

    # ---------- Placement ----------

    def place_order(self, req: PlaceOrderRequest, user: Optional[dict] = None,
                    defer: Optional[Defer] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        plan = self.validate(req, user)

        if self.transactions:
            order, payment, reserved = self._commit_in_transaction(plan)
        else:
            order, payment, reserved = self._commit_with_compensation(plan)

        logger.info(
            "Order %s placed: total=%.2f method=%s lines=%d",
            order["_id"], order["total"], order["payment_method"], len(order["items"]),
        )
        schedule(defer, self.notifier.publish_order_update, order)
        for variant in reserved:
            schedule(defer, self.notifier.publish_stock_update, variant)
        if order["payment_method"] == "COD" and self.mailer is not None:
            schedule(defer, self.mailer.send_order_invoice, order["_id"])
        return order, payment

    def validate(self, req: PlaceOrderRequest, user: Optional[dict]) -> OrderPlan:
        """Checks the request against current state without mutating anything."""
        if not req.items:
            raise ValidationError("Order items are required", fields=["items"])

        method = str(req.payment_method or "COD").strip().upper()
        if method not in PAYMENT_METHODS:
            raise ValidationError("Invalid payment method", fields=["paymentMethod"])

        address = req.address
        if address is None:
            raise ValidationError("Shipping address is required", fields=["address"])
        missing = [wire for attr, wire in REQUIRED_ADDRESS_FIELDS if not (getattr(address, attr) or "").strip()]
        if missing:
            raise ValidationError(f"Missing address fields: {', '.join(missing)}", fields=missing)

        guest = None
        if user is None:
            if not req.guest_email:
                raise ValidationError("guestEmail is required for guest checkout", fields=["guestEmail"])
            guest = GuestContact(email=req.guest_email, name=address.name, phone=address.phone).model_dump()

        if any(not ObjectId.is_valid(item.variant_id) for item in req.items):
            raise ValidationError("Invalid variants", fields=["items"])
        lines = [(ObjectId(item.variant_id), item.quantity) for item in req.items]

        variants = self.variants.find_many(vid for vid, _ in lines)
        if len(variants) != len(lines):
            raise ValidationError("Invalid variants", fields=["items"])
        for vid, quantity in lines:
            variant = variants[vid]
            if variant.get("stock", 0) < quantity:
                raise InsufficientStockError(
                    f"Insufficient stock for {variant.get('sku', vid)}", variant_id=str(vid)
                )

        return OrderPlan(
            user_id=user["_id"] if user else None,
            guest=guest,
            lines=lines,
            address=address.model_dump(),
            shipping_fee=float(req.shipping_fee or 0),
            tax=float(req.tax or 0),
            payment_method=PAYMENT_METHODS[method],
        )

    def _in_transaction(self, callback):
        # Needs a replica set or mongos. The callback may be re-run on transient errors.
        with self.db.client.start_session() as session:
            return session.with_transaction(
                callback,
                read_concern=ReadConcern("snapshot"),
                write_concern=WriteConcern("majority"),
            )

    def _commit_in_transaction(self, plan: OrderPlan):
        def callback(session):
            journal = _Journal()
            order, payment = self._apply(plan, journal, session)
            return order, payment, [variant for _, _, variant in journal.reserved]

        return self._in_transaction(callback)

    def _commit_with_compensation(self, plan: OrderPlan):
        journal = _Journal()
        try:
            order, payment = self._apply(plan, journal, None)
        except Exception:
            self._compensate(journal)
            raise
        return order, payment, [variant for _, _, variant in journal.reserved]

    def _apply(self, plan: OrderPlan, journal: _Journal, session) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        current = self.variants.find_many((vid for vid, _ in plan.lines), session=session)
        order_items = []
        subtotal = 0.0
        for vid, quantity in plan.lines:
            variant = current.get(vid)
            if variant is None:
                raise NotFoundError("Variant not found", variant_id=str(vid))
            price = float(variant["price"])
            subtotal += price * quantity
            order_items.append(OrderItem(
                product_id=variant["product_id"],
                variant_id=vid,
                quantity=quantity,
                price_snapshot=price,
            ))
        subtotal = round(subtotal, 2)

        for vid, quantity in plan.lines:
            updated = self.variants.reserve(vid, quantity, session=session)
            journal.reserved.append((vid, quantity, updated))

        total = subtotal + plan.shipping_fee + plan.tax
        order = Order(
            user_id=plan.user_id,
            guest=plan.guest,
            items=order_items,
            address=plan.address,
            subtotal=subtotal,
            shipping_fee=plan.shipping_fee,
            tax=plan.tax,
            total=total,
            status="Created",
            payment_status="Pending",
            payment_method=plan.payment_method,
        ).model_dump()
        journal.order_id = self._insert_order(order, session)

        payment = self._insert_payment(order, session)
        journal.payment_id = payment["_id"]

        if plan.user_id is not None:
            self.carts.clear(plan.user_id, session=session)
        return order, payment

    def _insert_order(self, order: Dict[str, Any], session) -> ObjectId:
        return create_document("order", order, database=self.db, session=session)

    def _insert_payment(self, order: Dict[str, Any], session) -> Dict[str, Any]:
        payment = Payment(
            order_id=order["_id"],
            provider=order["payment_method"],
            amount=order["total"],
            currency=self.currency,
            status="Pending",
        ).model_dump()
        create_document("payment", payment, database=self.db, session=session)
        return payment

    def _compensate(self, journal: _Journal) -> None:
        """Undoes a partially applied placement, newest step first."""
        logger.warning(
            "Rolling back order placement: order=%s payment=%s reserved=%d",
            journal.order_id, journal.payment_id, len(journal.reserved),
        )
        if journal.payment_id is not None:
            self._retry(self.db["payment"].delete_one, {"_id": journal.payment_id})
        if journal.order_id is not None:
            self._retry(self.db["order"].delete_one, {"_id": journal.order_id})
        for vid, quantity, _ in reversed(journal.reserved):
            self._retry(self.variants.release, vid, quantity)

    @staticmethod
    def _retry(fn, *args) -> None:
        for attempt in range(1, COMPENSATION_ATTEMPTS + 1):
            try:
                fn(*args)
                return
            except Exception:
                if attempt == COMPENSATION_ATTEMPTS:
                    logger.critical("Compensation step %s%r failed permanently", fn.__qualname__, args, exc_info=True)
                    return
                time.sleep(0.05 * attempt)

    # ---------- Lifecycle ----------

    def get_order(self, order_id) -> Dict[str, Any]:
        order = self.db["order"].find_one({"_id": to_object_id(order_id, "Order")})
        if not order:
            raise NotFoundError("Order not found")
        return order

    def update_status(self, order_id, status: str, defer: Optional[Defer] = None) -> Dict[str, Any]:
        """Moves an order along its lifecycle. Inventory is never touched here."""
        order = self.get_order(order_id)
        current = order.get("status", "Created")
        if status == current:
            return order
        if status == "Cancelled":
            raise ConflictError("Orders are cancelled through POST /api/orders/{id}/cancel", order_id=str(order["_id"]))
        if not can_transition(current, status):
            raise ConflictError(f"Cannot change order status from {current} to {status}")
        updated = self.db["order"].find_one_and_update(
            {"_id": order["_id"], "status": current},
            {"$set": {"status": status, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConflictError("Order status changed concurrently")
        logger.info("Order %s status %s -> %s", order["_id"], current, status)
        schedule(defer, self.notifier.publish_order_update, updated)
        return updated

    def cancel_order(self, order_id, defer: Optional[Defer] = None) -> Dict[str, Any]:
        """Cancels an order, returning its stock if it had not shipped yet."""
        order = self.get_order(order_id)
        current = order.get("status", "Created")
        if current == "Cancelled":
            return order
        if not can_transition(current, "Cancelled"):
            raise ConflictError(f"Cannot cancel an order that is {current}")

        restock = current in RESTOCKABLE_STATUSES and not order.get("restocked", False)
        lines = [(item["variant_id"], item["quantity"]) for item in order["items"]] if restock else []

        if self.transactions:
            def callback(session):
                released = []
                return self._apply_cancel(order, current, lines, released, session), released

            updated, released = self._in_transaction(callback)
        else:
            released = []
            try:
                updated = self._apply_cancel(order, current, lines, released, None)
            except Exception:
                logger.warning("Rolling back cancellation of order %s: %d lines released", order["_id"], len(released))
                for vid, quantity, variant in reversed(released):
                    if variant is not None:
                        self._retry(self.variants.reserve, vid, quantity)
                raise

        for vid, _, variant in released:
            if variant is None:
                logger.warning("Variant %s gone, cannot restock for order %s", vid, order["_id"])
                continue
            schedule(defer, self.notifier.publish_stock_update, variant)
        logger.info("Order %s cancelled (restocked=%s)", order["_id"], restock)
        schedule(defer, self.notifier.publish_order_update, updated)
        return updated

    def _apply_cancel(self, order: Dict[str, Any], current: str, lines: List[Tuple[ObjectId, int]],
                      released: List[Tuple[ObjectId, int, Optional[Dict[str, Any]]]], session) -> Dict[str, Any]:
        """Releases stock first, then flips the status only if nobody else changed it."""
        for vid, quantity in lines:
            released.append((vid, quantity, self.variants.release(vid, quantity, session=session)))
        updated = self.db["order"].find_one_and_update(
            {"_id": order["_id"], "status": current},
            {"$set": {
                "status": "Cancelled",
                "restocked": bool(lines) or order.get("restocked", False),
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is None:
            raise ConflictError("Order status changed concurrently")
        return updated

    def track_guest_order(self, order_id: str, email: str) -> Dict[str, Any]:
        if not ObjectId.is_valid(order_id):
            raise NotFoundError("Order not found")
        order = self.db["order"].find_one({"_id": ObjectId(order_id), "user_id": None})
        guest = (order or {}).get("guest") or {}
        if not guest.get("email") or guest["email"].lower() != (email or "").strip().lower():
            raise NotFoundError("Order not found")
        order.pop("guest", None)
        return order

    def list_orders(self, user_id: ObjectId) -> List[Dict[str, Any]]:
        orders = list(self.db["order"].find({"user_id": user_id}).sort("created_at", -1))
        return self._populate(orders)

    def list_admin_orders(self) -> List[Dict[str, Any]]:
        # Unpaid gateway orders stay out of the fulfilment view.
        query = {"$or": [{"payment_method": "COD"}, {"payment_status": "Paid"}]}
        orders = list(self.db["order"].find(query).sort("created_at", -1))
        return self._populate(orders)

    def _populate(self, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        product_ids = {it["product_id"] for o in orders for it in o.get("items", [])}
        variant_ids = {it["variant_id"] for o in orders for it in o.get("items", [])}
        products = {
            p["_id"]: p
            for p in self.db["product"].find({"_id": {"$in": list(product_ids)}}, {"title": 1, "images": 1, "brand": 1})
        }
        variants = {
            v["_id"]: v
            for v in self.db["variant"].find({"_id": {"$in": list(variant_ids)}}, {"size": 1, "color": 1, "sku": 1, "price": 1})
        }
        for order in orders:
            for item in order.get("items", []):
                item["product"] = products.get(item["product_id"])
                item["variant"] = variants.get(item["variant_id"])
        return orders
