import logging
import re
from typing import Any, Dict, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field

from auth import get_current_user, get_optional_user
from database import create_document, get_db, get_documents, is_object_id, now_utc, serialize_doc, to_object_id
from notifications import notify
from schemas import Customorder, EventType, Eventlog, Pricing, StatusChange

logger = logging.getLogger(__name__)

router = APIRouter()

CUSTOM_BASE_PRICE = 20.0
PLACEMENT_COST = 15.0
CUSTOM_ORDER_STATUSES = [
    "PENDING_REVIEW",
    "APPROVED",
    "IN_DESIGN",
    "IN_PRINTING",
    "READY_FOR_PICKUP",
    "OUT_FOR_DELIVERY",
    "DELIVERED",
    "CANCELLED",
]


def compute_pricing(quantity: int, placement_count: int = 1, base_price: float = CUSTOM_BASE_PRICE) -> Pricing:
    placement_cost = placement_count * PLACEMENT_COST
    return Pricing(
        base_price=base_price,
        placement_cost=placement_cost,
        quantity_multiplier=quantity,
        estimated_total=(base_price + placement_cost) * quantity,
    )


# Templates

@router.get("/api/templates")
def list_templates(
    q: Optional[str] = None,
    tag: Optional[str] = None,
    featured: Optional[bool] = None,
    limit: int = Query(12, ge=1, le=48),
    page: int = Query(1, ge=1),
):
    query: Dict[str, Any] = {"is_active": True}
    if q and q.strip():
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}, {"tags": pattern}]
    if tag:
        query["tags"] = tag
    if featured is not None:
        query["is_featured"] = featured

    collection = get_db()["designtemplate"]
    total = collection.count_documents(query)
    cursor = (
        collection.find(query)
        .sort([("usage_count", -1), ("created_at", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "templates": [serialize_doc(t) for t in cursor],
        "total": total,
        "page": page,
        "limit": limit,
    }


@router.get("/api/templates/{slug_or_id}")
def get_template(slug_or_id: str):
    if is_object_id(slug_or_id):
        query = {"_id": ObjectId(slug_or_id)}
    else:
        query = {"slug": slug_or_id}
    doc = get_db()["designtemplate"].find_one({**query, "is_active": True})
    if not doc:
        raise HTTPException(status_code=404, detail="Template not found")
    return {"template": serialize_doc(doc)}


# Events

class EventInput(BaseModel):
    type: EventType
    entity_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@router.post("/api/events", status_code=201)
def log_event(payload: EventInput, user: Optional[dict] = Depends(get_optional_user)):
    event = Eventlog(
        type=payload.type,
        entity_id=payload.entity_id,
        metadata=payload.metadata,
        user_id=user["id"] if user else None,
    )
    event_id = create_document("eventlog", event)
    if payload.type == "template_apply" and is_object_id(payload.entity_id):
        get_db()["designtemplate"].update_one({"_id": ObjectId(payload.entity_id)}, {"$inc": {"usage_count": 1}})
    return {"ok": True, "id": event_id}


# Custom orders

class CustomOrderInput(BaseModel):
    base_color: Literal["white", "black"]
    placement: Literal["front", "back", "chest_left", "chest_right"]
    vertical_position: Literal["upper", "center", "lower"]
    design_type: Literal["text", "image"]
    design_text: Optional[str] = Field(None, max_length=100)
    design_font: Optional[str] = None
    design_color: Optional[str] = None
    design_image_url: Optional[str] = None
    template_id: Optional[str] = None
    quantity: int = Field(1, ge=1, le=20)
    delivery_name: str = Field(..., min_length=1)
    delivery_address: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    notes: Optional[str] = Field(None, max_length=1000)


@router.post("/api/custom-orders", status_code=201)
def create_custom_order(payload: CustomOrderInput, current_user: dict = Depends(get_current_user)):
    if payload.design_type == "text" and not (payload.design_text or "").strip():
        raise HTTPException(status_code=400, detail="design_text is required for text designs")
    if payload.design_type == "image" and not payload.design_image_url:
        raise HTTPException(status_code=400, detail="design_image_url is required for image designs")
    if payload.template_id:
        template_oid = to_object_id(payload.template_id, "template id")
        if not get_db()["designtemplate"].find_one({"_id": template_oid}, {"_id": 1}):
            raise HTTPException(status_code=400, detail="Template not found")

    email = payload.email or current_user["email"]
    order = Customorder(
        user_id=current_user["id"],
        base_color=payload.base_color,
        placement=payload.placement,
        vertical_position=payload.vertical_position,
        design_type=payload.design_type,
        design_text=payload.design_text,
        design_font=payload.design_font,
        design_color=payload.design_color,
        design_image_url=payload.design_image_url,
        template_id=payload.template_id,
        quantity=payload.quantity,
        delivery_name=payload.delivery_name,
        delivery_address=payload.delivery_address,
        phone=payload.phone,
        email=email,
        notes=payload.notes or "",
        pricing=compute_pricing(payload.quantity),
        status_history=[StatusChange(status="PENDING_REVIEW", changed_at=now_utc(), changed_by=current_user["id"])],
    )
    order_id = create_document("customorder", order)
    logger.info("Custom order %s created by %s", order_id, current_user["id"])

    notify("custom_order_created", {
        "email": email,
        "customer_name": current_user.get("name") or email,
        "order_id": order_id,
    })
    doc = get_db()["customorder"].find_one({"_id": ObjectId(order_id)})
    return {"custom_order": serialize_doc(doc)}


@router.get("/api/custom-orders")
def list_my_custom_orders(current_user: dict = Depends(get_current_user)):
    docs = get_documents("customorder", {"user_id": current_user["id"]})
    return {"custom_orders": [serialize_doc(d) for d in docs]}


@router.get("/api/custom-orders/{order_id}")
def get_my_custom_order(order_id: str, current_user: dict = Depends(get_current_user)):
    oid = to_object_id(order_id, "custom order id")
    doc = get_db()["customorder"].find_one({"_id": oid, "user_id": current_user["id"]})
    if not doc:
        raise HTTPException(status_code=404, detail="Custom order not found")
    return {"custom_order": serialize_doc(doc)}
