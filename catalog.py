"""
Catalog: product records and their stock counts.

Writes are admin-only, validated before they reach the store, and followed
by a fresh snapshot published to live product subscribers.
"""
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import Identity, require_admin
from cart import Cart, to_money
from database import collection, now, serialize_doc, to_obj_id, transaction
from errors import NotFound, StoreError, ValidationError
from realtime import Subscription, hub
from schemas import Product, StockNotice

logger = structlog.get_logger(__name__)

CATEGORIES = ("seeds", "plants")
PRODUCTS_TOPIC = "products"
SEED_SENTINEL = "catalog-seed"

SORTS = {
    "name_asc": [("name", 1)],
    "name_desc": [("name", -1)],
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
}

INITIAL_PRODUCTS = [
    {
        "name": "Sunflower Seeds",
        "description": "Giant sunflower seeds, easy to grow.",
        "price": 150.00,
        "category": "seeds",
        "image_url": "https://placehold.co/300x300/f4e285/333333?text=Sunflower+Seeds",
        "stock": 100,
    },
    {
        "name": "Tomato Plant",
        "description": "Young cherry tomato plant, ready to pot.",
        "price": 275.00,
        "category": "plants",
        "image_url": "https://placehold.co/300x300/e6a2a2/333333?text=Tomato+Plant",
        "stock": 50,
    },
    {
        "name": "Basil Seeds",
        "description": "Sweet basil seeds for your herb garden.",
        "price": 100.00,
        "category": "seeds",
        "image_url": "https://placehold.co/300x300/a2e6a2/333333?text=Basil+Seeds",
        "stock": 75,
    },
    {
        "name": "Succulent Plant",
        "description": "Assorted small succulent, low maintenance.",
        "price": 350.00,
        "category": "plants",
        "image_url": "https://placehold.co/300x300/b2d8d8/333333?text=Succulent",
        "stock": 30,
    },
    {
        "name": "Lavender Plant",
        "description": "Fragrant lavender plant, attracts pollinators.",
        "price": 325.00,
        "category": "plants",
        "image_url": "https://placehold.co/300x300/c9a2e6/333333?text=Lavender+Plant",
        "stock": 40,
    },
]


def _products():
    return collection("products")


# Validation

def _parse_price(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        price = Decimal(str(value).strip())
        if not price.is_finite() or price <= 0:
            return None
        # quantize raises InvalidOperation past the context's precision
        price = to_money(price)
    except InvalidOperation:
        return None
    if price <= 0:
        return None
    return float(price)


def _parse_stock(value) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, str):
        value = value.strip()
        if not re.fullmatch(r"\d+", value):
            return None
        value = int(value)
    if not isinstance(value, int) or value < 0:
        return None
    return value


def validate_product(data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Return cleaned product fields or raise ValidationError.

    With `partial`, only the keys present (and not None) are checked.
    """
    errors: Dict[str, str] = {}
    cleaned: Dict[str, Any] = {}

    for field in ("name", "description", "category", "image_url"):
        if partial and data.get(field) is None:
            continue
        value = (data.get(field) or "").strip()
        if not value:
            errors[field] = f"{field.replace('_', ' ').capitalize()} is required."
            continue
        cleaned[field] = value

    if "category" in cleaned and cleaned["category"] not in CATEGORIES:
        errors["category"] = f"Category must be one of: {', '.join(CATEGORIES)}."
        cleaned.pop("category")

    if not (partial and data.get("price") is None):
        price = _parse_price(data.get("price"))
        if price is None:
            errors["price"] = "Price must be a positive number."
        else:
            cleaned["price"] = price

    if not (partial and data.get("stock") is None):
        stock = _parse_stock(data.get("stock"))
        if stock is None:
            errors["stock"] = "Stock must be a non-negative integer."
        else:
            cleaned["stock"] = stock

    if errors:
        raise ValidationError("Please correct the product fields.", errors)
    if partial and not cleaned:
        raise ValidationError("No fields to update")
    return cleaned


# Reads

def list_products(q: Optional[str] = None, category: Optional[str] = None, sort: Optional[str] = None) -> List[dict]:
    filter_q: Dict[str, Any] = {}
    if category and category != "all":
        filter_q["category"] = category
    if q:
        pattern = re.escape(q.strip())
        filter_q["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    try:
        cursor = _products().find(filter_q)
        if sort in SORTS:
            cursor = cursor.sort(SORTS[sort])
        return [serialize_doc(d) for d in cursor]
    except PyMongoError as exc:
        logger.error("products_read_failed", error=str(exc))
        raise StoreError(f"Error fetching products: {exc}") from exc


def get_product(product_id: str) -> dict:
    try:
        doc = _products().find_one({"_id": to_obj_id(product_id, "Product")})
    except PyMongoError as exc:
        raise StoreError(f"Error fetching product: {exc}") from exc
    if not doc:
        raise NotFound("Product not found")
    return serialize_doc(doc)


def subscribe_products(callback: Callable[[List[dict]], None]) -> Subscription:
    return hub.subscribe(PRODUCTS_TOPIC, callback, snapshot=list_products)


def publish_products():
    try:
        hub.refresh(PRODUCTS_TOPIC, list_products)
    except StoreError:
        logger.exception("products_publish_failed")


# Seeding

def seed_if_empty() -> bool:
    """Insert the starter catalog once. Returns True if this call seeded it."""
    products = _products()
    try:
        if products.count_documents({}) > 0:
            return False
        collection("meta").insert_one({"_id": SEED_SENTINEL, "created_at": now()})
    except DuplicateKeyError:
        logger.info("catalog_seed_skipped", reason="already seeded")
        return False
    except PyMongoError as exc:
        logger.error("catalog_seed_failed", error=str(exc))
        raise StoreError(f"Error seeding products: {exc}") from exc

    created_at = now()
    try:
        products.insert_many([{**p, "created_at": created_at} for p in INITIAL_PRODUCTS])
    except PyMongoError as exc:
        # release the sentinel so the next start can try again
        collection("meta").delete_one({"_id": SEED_SENTINEL})
        logger.error("catalog_seed_failed", error=str(exc))
        raise StoreError(f"Error seeding products: {exc}") from exc
    logger.info("catalog_seeded", count=len(INITIAL_PRODUCTS))
    publish_products()
    return True


# Admin writes

def add_product(data: Dict[str, Any], identity: Optional[Identity]) -> dict:
    require_admin(identity)
    product = Product(**validate_product(data)).model_dump()
    product["created_at"] = now()
    try:
        product_id = _products().insert_one(product).inserted_id
    except PyMongoError as exc:
        logger.error("product_add_failed", error=str(exc))
        raise StoreError(f"Error adding product: {exc}") from exc
    logger.info("product_added", product_id=str(product_id), by=identity.uid)
    publish_products()
    return serialize_doc({"_id": product_id, **product})


def update_product(product_id: str, patch: Dict[str, Any], identity: Optional[Identity]) -> dict:
    require_admin(identity)
    changes = validate_product(patch, partial=True)
    changes["updated_at"] = now()
    try:
        doc = _products().find_one_and_update(
            {"_id": to_obj_id(product_id, "Product")},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError as exc:
        logger.error("product_update_failed", product_id=product_id, error=str(exc))
        raise StoreError(f"Error updating product: {exc}") from exc
    if doc is None:
        raise NotFound("Product not found")
    logger.info("product_updated", product_id=product_id, fields=sorted(changes), by=identity.uid)
    publish_products()
    return serialize_doc(doc)


def delete_product(product_id: str, identity: Optional[Identity]):
    require_admin(identity)
    try:
        res = _products().delete_one({"_id": to_obj_id(product_id, "Product")})
    except PyMongoError as exc:
        logger.error("product_delete_failed", product_id=product_id, error=str(exc))
        raise StoreError(f"Error deleting product: {exc}") from exc
    if res.deleted_count == 0:
        raise NotFound("Product not found")
    logger.info("product_deleted", product_id=product_id, by=identity.uid)
    publish_products()


# Stock

def _reserve(products, product_id: str, quantity: int, session=None):
    oid = to_obj_id(product_id, "Product")
    # bounded retry: stock may be raised by an admin between the two conditional writes
    for _ in range(3):
        reserved = products.find_one_and_update(
            {"_id": oid, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if reserved is not None:
            return
        clamped = products.find_one_and_update(
            {"_id": oid, "stock": {"$lt": quantity}},
            {"$set": {"stock": 0}},
            return_document=ReturnDocument.BEFORE,
            session=session,
        )
        if clamped is not None:
            logger.warning(
                "stock_inconsistency",
                product_id=product_id,
                requested=quantity,
                available=clamped.get("stock", 0),
                clamped_to=0,
            )
            return
        if products.count_documents({"_id": oid}, session=session) == 0:
            logger.warning("stock_inconsistency", product_id=product_id, requested=quantity, reason="product missing")
            return
    logger.warning("stock_inconsistency", product_id=product_id, requested=quantity, reason="contended")


def decrement_stock_for_order(items: Iterable[Dict[str, Any]]):
    """Take each line's quantity off its product's stock, never below zero.

    Each line is a conditional atomic update on its product, so concurrent
    orders cannot lose each other's decrements.
    """
    items = list(items)
    products = _products()
    try:
        with transaction() as session:
            for item in items:
                _reserve(products, item["product_id"], int(item["quantity"]), session=session)
    except PyMongoError as exc:
        logger.error("stock_update_failed", error=str(exc))
        raise StoreError(f"Error updating stock after order: {exc}") from exc
    publish_products()


def restock_items(items: Iterable[Dict[str, Any]]):
    products = _products()
    try:
        with transaction() as session:
            for item in items:
                products.update_one(
                    {"_id": to_obj_id(item["product_id"], "Product")},
                    {"$inc": {"stock": int(item["quantity"])}},
                    session=session,
                )
    except PyMongoError as exc:
        logger.error("restock_failed", error=str(exc))
        raise StoreError(f"Error restoring stock: {exc}") from exc
    publish_products()


# Cart re-validation at order time

def build_cart(lines: Iterable[Any]) -> Tuple[Cart, List[StockNotice]]:
    """Rebuild a cart from (product_id, quantity) lines against current stock."""
    cart = Cart()
    notices: List[StockNotice] = []
    for line in lines:
        product = get_product(line.product_id)
        notice = cart.add(product, line.quantity)
        if notice:
            notices.append(notice)
    return cart, notices
