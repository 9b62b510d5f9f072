"""
Order workflow: checkout, status state machine and live order views.

An order is one document in the `orders` collection. The customer's view
("mine") and the admin view ("all") are queries over that same document, so
there is nothing to keep in sync between them and every status change is a
single atomic update.

Status changes are conditional on the status the caller last saw, which
makes a customer cancel and an admin fulfilment racing on the same order
resolve to exactly one winner.
"""
import random
import re
import string
import time
from functools import partial
from typing import Any, Callable, Dict, List, Optional

import structlog
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

import config
from auth import Identity, require_admin, require_signed_in
from cart import Cart
from catalog import decrement_stock_for_order, restock_items
from database import collection, now, serialize_doc, to_obj_id
from errors import InvalidTransition, NotFound, PermissionDenied, StoreError, ValidationError
from realtime import Subscription, hub
from schemas import CustomerInfo, Order

logger = structlog.get_logger(__name__)

ORDER_NUMBER_PREFIX = "PFL"
PAYMENT_METHOD = "Cash on Delivery"

ORDER_PLACED = "Order Placed"
PROCESSING = "Processing"
SHIPPED = "Shipped"
OUT_FOR_DELIVERY = "Out for Delivery"
DELIVERED = "Delivered"
CANCELLED = "Cancelled"

ORDER_STATUSES = [ORDER_PLACED, PROCESSING, SHIPPED, OUT_FOR_DELIVERY, DELIVERED, CANCELLED]

TRANSITIONS = {
    ORDER_PLACED: {PROCESSING, CANCELLED},
    PROCESSING: {SHIPPED, CANCELLED},
    SHIPPED: {OUT_FOR_DELIVERY},
    OUT_FOR_DELIVERY: {DELIVERED},
    DELIVERED: set(),
    CANCELLED: set(),
}
TERMINAL_STATUSES = {s for s, targets in TRANSITIONS.items() if not targets}
CANCELLABLE_STATUSES = [ORDER_PLACED, PROCESSING]

# Display buckets
ON_DELIVERY_STATUSES = [ORDER_PLACED, PROCESSING, SHIPPED, OUT_FOR_DELIVERY]
RECEIVED_STATUSES = [DELIVERED]
CANCELLED_STATUSES = [CANCELLED]
BUCKETS = {
    "on_delivery": ON_DELIVERY_STATUSES,
    "received": RECEIVED_STATUSES,
    "cancelled": CANCELLED_STATUSES,
}

SCOPES = ("mine", "all")
ALL_ORDERS_TOPIC = "orders:all"

PHONE_RE = re.compile(r"^\+?[0-9\s\-()]{7,20}$")
BASE36 = string.digits + string.ascii_uppercase


def _orders():
    return collection("orders")


def user_topic(user_id: str) -> str:
    return f"orders:user:{user_id}"


def generate_order_number() -> str:
    """PFL-<last 6 digits of epoch ms>-<4 random base36 chars>."""
    timestamp_part = str(int(time.time() * 1000))[-6:]
    random_part = "".join(random.choice(BASE36) for _ in range(4))
    return f"{ORDER_NUMBER_PREFIX}-{timestamp_part}-{random_part}"


def classify(status: str) -> Optional[str]:
    for bucket, statuses in BUCKETS.items():
        if status in statuses:
            return bucket
    return None


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, set())


def validate_customer_info(info: Dict[str, Any]) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    name = (info.get("name") or "").strip()
    address = (info.get("address") or "").strip()
    phone = (info.get("phone_number") or "").strip()
    if not name:
        errors["name"] = "Name is required."
    if not address:
        errors["address"] = "Address is required."
    if not phone:
        errors["phone_number"] = "Phone number is required."
    elif not PHONE_RE.match(phone):
        errors["phone_number"] = "Invalid phone number format."
    if errors:
        raise ValidationError("Please correct the errors in the form.", errors)
    return {"name": name, "address": address, "phone_number": phone}


def serialize_order(doc: dict) -> dict:
    order = serialize_doc(doc)
    order["bucket"] = classify(order.get("status"))
    return order


# Checkout

def place_order(cart: Cart, customer_info: Any, identity: Optional[Identity]) -> dict:
    """Persist the cart as an order, take the stock, and empty the cart.

    If the order write fails nothing exists and the cart is left alone. If
    only the stock update fails the order still stands; that is logged.
    """
    identity = require_signed_in(identity)
    if isinstance(customer_info, CustomerInfo):
        customer_info = customer_info.model_dump()
    info = validate_customer_info(customer_info or {})
    if not cart:
        raise ValidationError("Your cart is empty.", {"items": "Cart is empty."})

    items = [
        {
            "product_id": line["id"],
            "name": line.get("name", ""),
            "quantity": line["quantity"],
            "price": line["price"],
            "image_url": line.get("image_url"),
        }
        for line in cart.items
    ]
    timestamp = now()
    order = Order(
        order_number=generate_order_number(),
        user_id=identity.uid,
        customer_info=info,
        items=items,
        total_amount=float(cart.total),
        payment_method=PAYMENT_METHOD,
        status=ORDER_PLACED,
        tracking_number="",
        order_date=timestamp,
        last_updated=timestamp,
    ).model_dump()
    try:
        order_id = _orders().insert_one(order).inserted_id
    except PyMongoError as exc:
        logger.error("order_write_failed", user_id=identity.uid, error=str(exc))
        raise StoreError(f"Failed to place order: {exc}. Please try again.") from exc
    order["_id"] = order_id
    logger.info("order_placed", order_id=str(order_id), order_number=order["order_number"],
                user_id=identity.uid, total=order["total_amount"])

    try:
        decrement_stock_for_order(items)
    except StoreError:
        logger.error("stock_inconsistency", order_id=str(order_id), reason="stock update failed after order write")

    cart.clear()
    publish_orders(identity.uid)
    return serialize_order(order)


# Reads

def _scope_filter(scope: str, identity: Optional[Identity]) -> Dict[str, Any]:
    if scope not in SCOPES:
        raise ValidationError(f"Unknown scope '{scope}'", {"scope": "Must be 'mine' or 'all'."})
    if scope == "all":
        require_admin(identity)
        return {}
    identity = require_signed_in(identity)
    return {"user_id": identity.uid}


def _query(filter_q: Dict[str, Any]) -> List[dict]:
    try:
        cursor = _orders().find(filter_q).sort("order_date", DESCENDING)
        return [serialize_order(d) for d in cursor]
    except PyMongoError as exc:
        logger.error("orders_read_failed", error=str(exc))
        raise StoreError(f"Error fetching orders: {exc}") from exc


def list_orders(scope: str, identity: Optional[Identity], bucket: Optional[str] = None) -> List[dict]:
    filter_q = _scope_filter(scope, identity)
    if bucket:
        if bucket not in BUCKETS:
            raise ValidationError(f"Unknown bucket '{bucket}'", {"bucket": "Must be one of: " + ", ".join(BUCKETS)})
        filter_q["status"] = {"$in": BUCKETS[bucket]}
    return _query(filter_q)


def get_order(order_id: str, identity: Optional[Identity]) -> dict:
    identity = require_signed_in(identity)
    try:
        doc = _orders().find_one({"_id": to_obj_id(order_id, "Order")})
    except PyMongoError as exc:
        raise StoreError(f"Error fetching order: {exc}") from exc
    if not doc or (doc.get("user_id") != identity.uid and not identity.is_admin):
        raise NotFound("Order not found")
    return serialize_order(doc)


# Live views

def subscribe_orders(scope: str, identity: Optional[Identity], callback: Callable[[List[dict]], None]) -> Subscription:
    """Deliver the scope's orders now and after every committed order write.

    The caller owns the returned subscription and must unsubscribe it.
    """
    filter_q = _scope_filter(scope, identity)
    topic = ALL_ORDERS_TOPIC if scope == "all" else user_topic(identity.uid)
    return hub.subscribe(topic, callback, snapshot=partial(_query, filter_q))


def publish_orders(user_id: str):
    for topic, filter_q in ((user_topic(user_id), {"user_id": user_id}), (ALL_ORDERS_TOPIC, {})):
        try:
            hub.refresh(topic, partial(_query, filter_q))
        except StoreError:
            logger.exception("orders_publish_failed", topic=topic)


# Status changes

def _apply_status(doc: dict, new_status: str, extra: Dict[str, Any]) -> Optional[dict]:
    """Compare-and-swap on the status the caller read."""
    return _orders().find_one_and_update(
        {"_id": doc["_id"], "status": doc["status"]},
        {"$set": {"status": new_status, "last_updated": now(), **extra}},
        return_document=ReturnDocument.AFTER,
    )


def update_status(order_id: str, new_status: str, tracking_number: str, identity: Optional[Identity],
                  override: bool = False) -> dict:
    identity = require_admin(identity)
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown status '{new_status}'", {"status": "Unknown status."})
    oid = to_obj_id(order_id, "Order")
    try:
        doc = _orders().find_one({"_id": oid})
        if doc is None:
            raise NotFound("Order not found")
        current = doc["status"]
        if new_status != current and not can_transition(current, new_status):
            if not override:
                raise InvalidTransition(f"Cannot change order from '{current}' to '{new_status}'.")
            logger.warning("order_status_override", order_id=order_id, from_status=current,
                           to_status=new_status, by=identity.uid)
        updated = _apply_status(doc, new_status, {"tracking_number": (tracking_number or "").strip()})
    except PyMongoError as exc:
        logger.error("order_update_failed", order_id=order_id, error=str(exc))
        raise StoreError(f"Failed to update order: {exc}") from exc
    if updated is None:
        raise InvalidTransition("Order was changed by someone else; reload and try again.")

    logger.info("order_status_updated", order_id=order_id, from_status=current, to_status=new_status, by=identity.uid)
    if new_status == CANCELLED and current != CANCELLED and config.RESTOCK_ON_CANCEL:
        _restock(updated)
    publish_orders(updated["user_id"])
    return serialize_order(updated)


def cancel_order(order_id: str, identity: Optional[Identity]) -> dict:
    identity = require_signed_in(identity)
    oid = to_obj_id(order_id, "Order")
    try:
        updated = _orders().find_one_and_update(
            {"_id": oid, "user_id": identity.uid, "status": {"$in": CANCELLABLE_STATUSES}},
            {"$set": {"status": CANCELLED, "last_updated": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            doc = _orders().find_one({"_id": oid})
    except PyMongoError as exc:
        logger.error("order_cancel_failed", order_id=order_id, error=str(exc))
        raise StoreError(f"Failed to cancel order: {exc}") from exc

    if updated is None:
        if doc is None:
            raise NotFound("Order not found")
        if doc.get("user_id") != identity.uid:
            raise PermissionDenied("You can only cancel your own orders.")
        raise InvalidTransition(f"Order {doc.get('order_number')} can no longer be cancelled ({doc.get('status')}).")

    logger.info("order_cancelled", order_id=order_id, order_number=updated.get("order_number"), by=identity.uid)
    if config.RESTOCK_ON_CANCEL:
        _restock(updated)
    publish_orders(identity.uid)
    return serialize_order(updated)


def _restock(order: dict):
    try:
        restock_items(order.get("items", []))
    except StoreError:
        logger.error("stock_inconsistency", order_id=str(order["_id"]), reason="restock after cancel failed")
