"""Variant store: per-size/color stock and price."""
import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, to_object_id, utcnow
from errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from notifications import NotificationSink
from schemas import Variant, VariantCreateRequest, VariantUpdateRequest

logger = logging.getLogger(__name__)

DEFAULT_SIZE = "One Size"


def availability_for(stock: int) -> str:
    return "InStock" if stock > 0 else "OutOfStock"


def normalize_sku(sku: str) -> str:
    return sku.strip().upper()


class VariantStore:
    def __init__(self, database, notifier: Optional[NotificationSink] = None):
        self.db = database
        self.notifier = notifier or NotificationSink()

    @property
    def collection(self):
        return self.db["variant"]

    # Reads

    def get(self, variant_id, session=None) -> Dict[str, Any]:
        variant = self.collection.find_one({"_id": to_object_id(variant_id, "Variant")}, session=session)
        if not variant:
            raise NotFoundError("Variant not found")
        return variant

    def find_many(self, variant_ids: Iterable[ObjectId], session=None) -> Dict[ObjectId, Dict[str, Any]]:
        """Batch read keyed by id. Missing ids are simply absent."""
        cursor = self.collection.find({"_id": {"$in": list(variant_ids)}}, session=session)
        return {v["_id"]: v for v in cursor}

    def list_for_product(self, product_id) -> List[Dict[str, Any]]:
        pid = to_object_id(product_id, "Product")
        return get_documents("variant", {"product_id": pid}, database=self.db)

    def best_in_stock(self, product_id: ObjectId) -> Optional[Dict[str, Any]]:
        """Highest stock, then lowest price, then lexical size."""
        cursor = (
            self.collection.find({"product_id": product_id, "stock": {"$gt": 0}})
            .sort([("stock", DESCENDING), ("price", ASCENDING), ("size", ASCENDING)])
            .limit(1)
        )
        return next(iter(cursor), None)

    def ensure_default_variant(self, product: Dict[str, Any]) -> Dict[str, Any]:
        """Provisions the implicit "One Size" variant for a product that has none.

        A concurrent request may insert it first; the unique index decides and the
        winner's document is returned.
        """
        stock = max(int(product.get("stock", 0) or 0), 0)
        variant = Variant(
            product_id=product["_id"],
            size=DEFAULT_SIZE,
            sku=normalize_sku(f"{product['_id']}-ONESIZE"),
            price=float(product.get("price", 0) or 0),
            stock=stock,
            availability=availability_for(stock),
        )
        try:
            variant_id = create_document("variant", variant, database=self.db)
        except DuplicateKeyError:
            existing = self.collection.find_one({"product_id": product["_id"], "size": DEFAULT_SIZE})
            if existing is None:
                raise ConflictError("Default variant SKU already in use")
            return existing
        created = self.collection.find_one({"_id": variant_id})
        logger.info("Provisioned default variant %s for product %s", variant_id, product["_id"])
        self.notifier.publish_stock_update(created)
        return created

    # Stock

    def reserve(self, variant_id: ObjectId, quantity: int, session=None) -> Dict[str, Any]:
        """Atomically takes ``quantity`` units, refusing to go below zero."""
        updated = self.collection.find_one_and_update(
            {"_id": variant_id, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is None:
            current = self.collection.find_one({"_id": variant_id}, session=session)
            if current is None:
                raise NotFoundError("Variant not found", variant_id=str(variant_id))
            logger.info(
                "Stock reservation rejected for %s: wanted %d, have %d",
                variant_id, quantity, current.get("stock", 0),
            )
            raise InsufficientStockError(
                f"Insufficient stock for {current.get('sku', variant_id)}", variant_id=str(variant_id)
            )
        return self._sync_availability(updated, session=session)

    def release(self, variant_id: ObjectId, quantity: int, session=None) -> Optional[Dict[str, Any]]:
        """Puts ``quantity`` units back. Returns None if the variant is gone."""
        updated = self.collection.find_one_and_update(
            {"_id": variant_id},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is None:
            return None
        return self._sync_availability(updated, session=session)

    def _sync_availability(self, variant: Dict[str, Any], session=None) -> Dict[str, Any]:
        # Only applies while stock is still the value we saw; a later mutation syncs itself.
        expected = availability_for(variant["stock"])
        if variant.get("availability") != expected:
            self.collection.update_one(
                {"_id": variant["_id"], "stock": variant["stock"]},
                {"$set": {"availability": expected}},
                session=session,
            )
            variant["availability"] = expected
        return variant

    # Admin edits

    def create(self, req: VariantCreateRequest) -> Dict[str, Any]:
        product_id = to_object_id(req.product_id, "Product")
        if not self.db["product"].find_one({"_id": product_id}):
            raise NotFoundError("Product not found")
        sku = normalize_sku(req.sku)
        if not sku:
            raise ValidationError("sku is required", fields=["sku"])
        variant = Variant(
            product_id=product_id,
            size=req.size,
            color=req.color,
            sku=sku,
            price=req.price,
            stock=req.stock,
            availability=availability_for(req.stock),
        )
        try:
            variant_id = create_document("variant", variant, database=self.db)
        except DuplicateKeyError:
            raise ConflictError("Duplicate variant or SKU", sku=sku)
        created = self.collection.find_one({"_id": variant_id})
        self.notifier.publish_stock_update(created)
        return created

    def update(self, variant_id, req: VariantUpdateRequest) -> Dict[str, Any]:
        vid = to_object_id(variant_id, "Variant")
        updates = {k: v for k, v in req.model_dump().items() if v is not None}
        if not updates:
            raise ValidationError("No updates provided")
        if "sku" in updates:
            updates["sku"] = normalize_sku(updates["sku"])
        if "stock" in updates:
            updates["availability"] = availability_for(updates["stock"])
        updates["updated_at"] = utcnow()
        try:
            variant = self.collection.find_one_and_update(
                {"_id": vid}, {"$set": updates}, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            raise ConflictError("Duplicate variant or SKU")
        if not variant:
            raise NotFoundError("Variant not found")
        self.notifier.publish_stock_update(variant)
        return variant

    def delete(self, variant_id) -> None:
        vid = to_object_id(variant_id, "Variant")
        if self.db["order"].find_one({"items.variant_id": vid}, {"_id": 1}):
            raise ConflictError("Variant is referenced by existing orders")
        result = self.collection.delete_one({"_id": vid})
        if result.deleted_count == 0:
            raise NotFoundError("Variant not found")
        self.notifier.publish_stock_update({"id": str(vid), "deleted": True})
