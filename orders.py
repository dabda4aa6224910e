import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import get_current_user
from database import create_document, get_db, is_object_id, now_utc, serialize_doc
from notifications import notify, notify_order_status
from schemas import Order as OrderSchema, OrderItem, PaymentMethod, StatusChange, primary_image

logger = logging.getLogger(__name__)

router = APIRouter()

ORDER_STATUSES = ["Pending", "Accepted", "In Printing", "Out for Delivery", "Delivered", "Cancelled"]
FORWARD_CHAIN = ["Pending", "Accepted", "In Printing", "Out for Delivery", "Delivered"]
TERMINAL_STATUSES = {"Delivered", "Cancelled"}
DELIVERED_STATUSES = {"DELIVERED", "COMPLETED", "FULFILLED"}
ORDER_NUMBER_ATTEMPTS = 10


class OrderTransitionError(Exception):
    pass


def is_delivered_status(status: Optional[str]) -> bool:
    if not status:
        return False
    return str(status).strip().upper() in DELIVERED_STATUSES


def can_transition(current: str, new: str) -> bool:
    if current == new:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if new == "Cancelled":
        return True
    if current not in FORWARD_CHAIN or new not in FORWARD_CHAIN:
        return False
    return FORWARD_CHAIN.index(new) > FORWARD_CHAIN.index(current)


def generate_order_number(date: Optional[datetime] = None, sequence: int = 0) -> str:
    date = date or now_utc()
    return f"ORD-{date:%Y%m%d}-{sequence:03d}"


def find_order(order_ref: str, extra_filter: Optional[dict] = None) -> Optional[dict]:
    """Look an order up by ObjectId, falling back to its order number"""
    db = get_db()
    extra_filter = extra_filter or {}
    order = None
    if is_object_id(order_ref):
        order = db["order"].find_one({"_id": ObjectId(order_ref), **extra_filter})
    if not order:
        order = db["order"].find_one({"order_number": order_ref, **extra_filter})
    return order


def apply_status_change(order: dict, new_status: str, changed_by: str, send_email: bool = True) -> dict:
    current = order.get("status", "Pending")
    if new_status not in ORDER_STATUSES:
        raise OrderTransitionError(f"Unknown status: {new_status}")
    if current == new_status:
        return order
    if not can_transition(current, new_status):
        raise OrderTransitionError(f"Cannot move order from {current} to {new_status}")

    entry = StatusChange(status=new_status, changed_at=now_utc(), changed_by=changed_by).model_dump()
    # Guard on the current status so concurrent updates cannot both apply
    updated = get_db()["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": {"status": new_status, "updated_at": now_utc()}, "$push": {"status_history": entry}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise OrderTransitionError("Order status changed concurrently, reload and retry")
    logger.info("Order %s moved %s -> %s by %s", updated.get("order_number"), current, new_status, changed_by)
    if send_email:
        notify_order_status(updated, new_status)
    return updated


def change_status_or_409(order: dict, new_status: str, changed_by: str) -> dict:
    try:
        return apply_status_change(order, new_status, changed_by)
    except OrderTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


def insert_order(order_fields: Dict[str, Any]) -> dict:
    """Insert an order under the next free ORD-YYYYMMDD-NNN number"""
    db = get_db()
    today = now_utc()
    prefix = generate_order_number(today, 0)[:-3]
    start = db["order"].count_documents({"order_number": {"$regex": f"^{prefix}"}})
    for seq in range(start, start + ORDER_NUMBER_ATTEMPTS):
        candidate = generate_order_number(today, seq)
        try:
            order = OrderSchema(order_number=candidate, **order_fields)
            order_id = create_document("order", order)
        except DuplicateKeyError:
            continue
        return db["order"].find_one({"_id": ObjectId(order_id)})
    logger.error("Exhausted order number candidates for %s", prefix)
    raise HTTPException(status_code=500, detail="Unable to generate order number")


# Request models

class CheckoutInput(BaseModel):
    delivery_name: Optional[str] = Field(None, min_length=2)
    delivery_address: str = Field(..., min_length=5)
    phone: str = Field(..., min_length=5)
    email: Optional[EmailStr] = None
    notes: Optional[str] = Field(None, max_length=500)
    payment_method: PaymentMethod = "stripe"


@router.post("/api/checkout", status_code=201)
def checkout(payload: CheckoutInput, current_user: dict = Depends(get_current_user)):
    db = get_db()
    cart_items = list(db["cartitem"].find({"user_id": current_user["id"]}))
    if not cart_items:
        raise HTTPException(status_code=409, detail="Cart is empty")

    product_ids = list({ObjectId(i["product_id"]) for i in cart_items if ObjectId.is_valid(i["product_id"])})
    products = db["product"].find({"_id": {"$in": product_ids}, "is_active": True})
    product_map = {str(p["_id"]): p for p in products}
    if any(i["product_id"] not in product_map for i in cart_items):
        raise HTTPException(status_code=409, detail="Some items are unavailable")

    items: List[OrderItem] = []
    for cart_item in cart_items:
        product = product_map[cart_item["product_id"]]
        unit_price = float(product["base_price"])
        quantity = int(cart_item["quantity"])
        image = primary_image(product)
        items.append(OrderItem(
            product_id=cart_item["product_id"],
            name=product["name"],
            unit_price=unit_price,
            quantity=quantity,
            subtotal=round(unit_price * quantity, 2),
            size=cart_item["size"],
            color=cart_item["color"],
            image_url=image["url"] if image else None,
        ))

    subtotal = round(sum(i.subtotal for i in items), 2)
    email = payload.email or current_user["email"]
    order = insert_order({
        "user_id": current_user["id"],
        "items": items,
        "delivery_name": payload.delivery_name,
        "delivery_address": payload.delivery_address,
        "phone": payload.phone,
        "email": email,
        "notes": payload.notes,
        "subtotal": subtotal,
        "total": subtotal,
        "payment_method": payload.payment_method,
        "status_history": [StatusChange(status="Pending", changed_at=now_utc(), changed_by=current_user["id"])],
    })

    for item in items:
        db["product"].update_one({"_id": ObjectId(item.product_id)}, {"$inc": {"sales_count": item.quantity}})
    db["cartitem"].delete_many({"user_id": current_user["id"]})

    notify("order_placed", {
        "email": email,
        "customer_name": current_user.get("name") or current_user["email"],
        "order_id": order["order_number"],
        "total": f"{subtotal:.2f}",
    })

    return {
        "order_id": str(order["_id"]),
        "order_number": order["order_number"],
        "total": order["total"],
        "payment_method": order["payment_method"],
    }


@router.get("/api/orders")
def list_my_orders(current_user: dict = Depends(get_current_user)):
    db = get_db()
    orders = list(db["order"].find({"user_id": current_user["id"]}).sort("created_at", -1))

    product_ids = {item["product_id"] for o in orders for item in o.get("items", []) if item.get("product_id")}
    reviewed = set()
    slugs: Dict[str, str] = {}
    if product_ids:
        reviewed = {
            r["product_id"]
            for r in db["productrating"].find({"user_id": current_user["id"], "product_id": {"$in": list(product_ids)}})
        }
        object_ids = [ObjectId(pid) for pid in product_ids if ObjectId.is_valid(pid)]
        slugs = {str(p["_id"]): p.get("slug") for p in db["product"].find({"_id": {"$in": object_ids}})}

    result = []
    for order in orders:
        delivered = is_delivered_status(order.get("status"))
        items = []
        for item in order.get("items", []):
            pid = item.get("product_id")
            items.append({
                **item,
                "product_slug": slugs.get(pid),
                "needs_review": bool(delivered and pid and pid not in reviewed),
            })
        order["items"] = items
        result.append(serialize_doc(order))
    return {"orders": result}


@router.get("/api/orders/{order_ref}")
def get_my_order(order_ref: str, current_user: dict = Depends(get_current_user)):
    order = find_order(order_ref, {"user_id": current_user["id"]})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"order": serialize_doc(order)}


@router.post("/api/orders/{order_ref}/cancel")
def cancel_my_order(order_ref: str, current_user: dict = Depends(get_current_user)):
    order = find_order(order_ref, {"user_id": current_user["id"]})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.get("status") != "Pending":
        raise HTTPException(status_code=409, detail="Only pending orders can be cancelled")
    order = change_status_or_409(order, "Cancelled", current_user["id"])
    return {"order": serialize_doc(order)}
