"""
Per-user cart: a list of (product, variant, quantity, price snapshot) items.

Carts belong to a single user, so updates are plain read-modify-write.
"""
from typing import Any, Dict, List, Optional

from bson import ObjectId

from database import to_object_id, utcnow
from errors import InsufficientStockError, NotFoundError, ValidationError
from inventory import VariantStore
from schemas import Cart, CartItem


class CartService:
    def __init__(self, database, variants: VariantStore):
        self.db = database
        self.variants = variants

    @property
    def collection(self):
        return self.db["cart"]

    def get_cart(self, user_id: ObjectId) -> Dict[str, Any]:
        cart = self.collection.find_one({"user_id": user_id})
        return cart or Cart(user_id=user_id).model_dump()

    def resolve_variant(self, product_id: ObjectId, variant_id: Optional[str]) -> Dict[str, Any]:
        if variant_id:
            variant = self.variants.get(variant_id)
            if variant["product_id"] != product_id:
                raise ValidationError("Variant does not belong to product", fields=["variantId"])
            return variant

        best = self.variants.best_in_stock(product_id)
        if best:
            return best
        if self.variants.collection.find_one({"product_id": product_id}, {"_id": 1}):
            raise InsufficientStockError("Product is out of stock")
        product = self.db["product"].find_one({"_id": product_id})
        if not product:
            raise NotFoundError("Product not found")
        return self.variants.ensure_default_variant(product)

    def add_item(self, user_id: ObjectId, product_id: str, quantity: int, variant_id: Optional[str] = None) -> Dict[str, Any]:
        if quantity < 1:
            raise ValidationError("quantity must be at least 1", fields=["quantity"])
        pid = to_object_id(product_id, "Product")
        variant = self.resolve_variant(pid, variant_id)

        items = self._items(user_id)
        existing = _find_item(items, variant["_id"])
        wanted = quantity + (existing["quantity"] if existing else 0)
        if variant.get("stock", 0) < wanted:
            raise InsufficientStockError(
                f"Insufficient stock for {variant.get('sku')}", variant_id=str(variant["_id"])
            )

        if existing:
            existing["quantity"] = wanted
            existing["price_snapshot"] = variant["price"]
        else:
            items.append(CartItem(
                product_id=pid,
                variant_id=variant["_id"],
                quantity=quantity,
                price_snapshot=variant["price"],
            ).model_dump())
        return self._save(user_id, items)

    def update_item(self, user_id: ObjectId, variant_id: str, quantity: int) -> Dict[str, Any]:
        if quantity <= 0:
            return self.remove_item(user_id, variant_id)

        vid = to_object_id(variant_id, "Variant")
        items = self._items(user_id)
        existing = _find_item(items, vid)
        if not existing:
            raise NotFoundError("Item not in cart")
        variant = self.variants.get(vid)
        if variant.get("stock", 0) < quantity:
            raise InsufficientStockError(
                f"Insufficient stock for {variant.get('sku')}", variant_id=str(vid)
            )
        existing["quantity"] = quantity
        existing["price_snapshot"] = variant["price"]
        return self._save(user_id, items)

    def remove_item(self, user_id: ObjectId, variant_id: str) -> Dict[str, Any]:
        if ObjectId.is_valid(variant_id):
            self.collection.update_one(
                {"user_id": user_id},
                {"$pull": {"items": {"variant_id": ObjectId(variant_id)}}, "$set": {"updated_at": utcnow()}},
            )
        return self.get_cart(user_id)

    def clear(self, user_id: ObjectId, session=None) -> None:
        """Empties the cart in place; the document itself is kept."""
        self.collection.update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "updated_at": utcnow()}},
            session=session,
        )

    def _items(self, user_id: ObjectId) -> List[Dict[str, Any]]:
        return list(self.get_cart(user_id).get("items", []))

    def _save(self, user_id: ObjectId, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        now = utcnow()
        self.collection.update_one(
            {"user_id": user_id},
            {"$set": {"items": items, "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )
        return self.collection.find_one({"user_id": user_id})


def _find_item(items: List[Dict[str, Any]], variant_id: ObjectId) -> Optional[Dict[str, Any]]:
    for it in items:
        if it["variant_id"] == variant_id:
            return it
    return None
