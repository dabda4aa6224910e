"""
Admin API

Catalog management, order fulfilment, moderation, user management and the
dashboard. Every route is gated by `require_admin`, except the two-factor
routes which only need the admin role.
"""
import hashlib
import logging
import re
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import hash_password, require_admin, require_admin_role, to_public_user
from catalog import slugify
from database import as_utc, create_document, get_db, get_documents, now_utc, serialize_doc, to_object_id
from designs import CUSTOM_ORDER_STATUSES
from notifications import EmailDeliveryError, build_order_email, notify, send_email
from orders import ORDER_STATUSES, change_status_or_409, find_order
from payments import record_refund_due
from schemas import Designtemplate, Product, ProductImage, StatusChange, TemplatePlacement
from schemas import User as UserSchema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin")

TWO_FACTOR_CODE_MINUTES = 10
GENERATED_PASSWORD_LENGTH = 12


def _paging(page: int, page_size: int) -> Dict[str, int]:
    return {"skip": (page - 1) * page_size, "limit": page_size}


# Products

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: Optional[str] = None
    description: str = Field(..., min_length=1)
    base_price: float = Field(..., gt=0)
    category: str = "general"
    colors: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)
    image_urls: List[str] = Field(..., min_length=1)
    is_active: bool = True
    is_featured: bool = False
    featured_rank: Optional[int] = None
    sku: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    slug: Optional[str] = None
    description: Optional[str] = Field(None, min_length=1)
    base_price: Optional[float] = Field(None, gt=0)
    category: Optional[str] = None
    colors: Optional[List[str]] = None
    sizes: Optional[List[str]] = None
    image_urls: Optional[List[str]] = Field(None, min_length=1)
    is_active: Optional[bool] = None
    sku: Optional[str] = None


class DisplayOrderInput(BaseModel):
    display_order: float


class FeaturedInput(BaseModel):
    is_featured: bool
    featured_rank: Optional[int] = Field(None, ge=0)


class HeroInput(BaseModel):
    is_hero: bool


def build_images(name: str, urls: List[str]) -> List[ProductImage]:
    return [ProductImage(url=url, alt=name, is_primary=index == 0) for index, url in enumerate(urls)]


def _get_product_or_404(product_id: str) -> dict:
    doc = get_db()["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc


def _update_product(product_id: str, updates: Dict[str, Any]) -> dict:
    updates["updated_at"] = now_utc()
    try:
        doc = get_db()["product"].find_one_and_update(
            {"_id": to_object_id(product_id, "product id")},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Slug already in use")
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc


@router.get("/products")
def admin_list_products(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    _: dict = Depends(require_admin),
):
    collection = get_db()["product"]
    paging = _paging(page, page_size)
    cursor = (
        collection.find({})
        .sort([("display_order", -1), ("created_at", -1)])
        .skip(paging["skip"])
        .limit(paging["limit"])
    )
    return {
        "products": [serialize_doc(p) for p in cursor],
        "total": collection.count_documents({}),
        "page": page,
        "page_size": page_size,
    }


@router.post("/products", status_code=201)
def admin_create_product(payload: ProductCreate, admin: dict = Depends(require_admin)):
    slug = slugify(payload.slug or payload.name)
    if not slug:
        raise HTTPException(status_code=400, detail="Invalid slug")
    db = get_db()
    if db["product"].find_one({"slug": slug}, {"_id": 1}):
        raise HTTPException(status_code=409, detail="Slug already in use")
    product = Product(
        name=payload.name,
        slug=slug,
        description=payload.description,
        base_price=payload.base_price,
        category=payload.category,
        colors=payload.colors,
        sizes=payload.sizes,
        images=build_images(payload.name, payload.image_urls),
        is_active=payload.is_active,
        is_featured=payload.is_featured,
        featured_rank=payload.featured_rank if payload.is_featured else None,
        sku=payload.sku,
    )
    try:
        product_id = create_document("product", product)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Slug already in use")
    logger.info("Admin %s created product %s (%s)", admin["id"], product_id, slug)
    return {"product": serialize_doc(db["product"].find_one({"_id": ObjectId(product_id)}))}


@router.get("/products/{product_id}")
def admin_get_product(product_id: str, _: dict = Depends(require_admin)):
    return {"product": serialize_doc(_get_product_or_404(product_id))}


@router.patch("/products/{product_id}")
def admin_update_product(product_id: str, payload: ProductUpdate, _: dict = Depends(require_admin)):
    current = _get_product_or_404(product_id)
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "slug" in updates:
        updates["slug"] = slugify(updates["slug"])
        if not updates["slug"]:
            raise HTTPException(status_code=400, detail="Invalid slug")
        clash = get_db()["product"].find_one({"slug": updates["slug"], "_id": {"$ne": current["_id"]}}, {"_id": 1})
        if clash:
            raise HTTPException(status_code=409, detail="Slug already in use")
    if "image_urls" in updates:
        urls = updates.pop("image_urls")
        updates["images"] = [i.model_dump() for i in build_images(updates.get("name", current["name"]), urls)]
    if not updates:
        return {"product": serialize_doc(current)}
    return {"product": serialize_doc(_update_product(product_id, updates))}


@router.delete("/products/{product_id}")
def admin_delete_product(product_id: str, admin: dict = Depends(require_admin)):
    db = get_db()
    oid = to_object_id(product_id, "product id")
    res = db["product"].delete_one({"_id": oid})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    db["cartitem"].delete_many({"product_id": product_id})
    db["wishlistitem"].delete_many({"product_id": product_id})
    logger.info("Admin %s deleted product %s", admin["id"], product_id)
    return {"ok": True}


@router.patch("/products/{product_id}/display-order")
def admin_set_display_order(product_id: str, payload: DisplayOrderInput, _: dict = Depends(require_admin)):
    return {"product": serialize_doc(_update_product(product_id, {"display_order": payload.display_order}))}


@router.patch("/products/{product_id}/featured")
def admin_set_featured(product_id: str, payload: FeaturedInput, _: dict = Depends(require_admin)):
    updates = {
        "is_featured": payload.is_featured,
        "featured_rank": payload.featured_rank if payload.is_featured else None,
    }
    return {"product": serialize_doc(_update_product(product_id, updates))}


@router.patch("/products/{product_id}/hero")
def admin_set_hero(product_id: str, payload: HeroInput, _: dict = Depends(require_admin)):
    product = _get_product_or_404(product_id)
    if payload.is_hero:
        # Only one hero product at a time
        get_db()["product"].update_many(
            {"is_hero": True, "_id": {"$ne": product["_id"]}},
            {"$set": {"is_hero": False, "updated_at": now_utc()}},
        )
    return {"product": serialize_doc(_update_product(product_id, {"is_hero": payload.is_hero}))}


# Orders

class AdminOrderUpdate(BaseModel):
    status: Optional[str] = None
    admin_note: Optional[str] = Field(None, max_length=1000)


@router.get("/orders")
def admin_list_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    _: dict = Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    collection = get_db()["order"]
    paging = _paging(page, page_size)
    cursor = collection.find(query).sort("created_at", -1).skip(paging["skip"]).limit(paging["limit"])
    return {
        "orders": [serialize_doc(o) for o in cursor],
        "total": collection.count_documents(query),
        "page": page,
        "page_size": page_size,
    }


@router.get("/orders/{order_ref}")
def admin_get_order(order_ref: str, _: dict = Depends(require_admin)):
    order = find_order(order_ref)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    customer = None
    if ObjectId.is_valid(order.get("user_id", "")):
        user = get_db()["user"].find_one({"_id": ObjectId(order["user_id"])})
        if user:
            customer = {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email")}
    return {"order": serialize_doc(order), "customer": customer}


@router.patch("/orders/{order_ref}")
def admin_update_order(order_ref: str, payload: AdminOrderUpdate, admin: dict = Depends(require_admin)):
    order = find_order(order_ref)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if payload.status is not None and payload.status not in ORDER_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status")

    if payload.status is not None:
        order = change_status_or_409(order, payload.status, admin["id"])
        if order.get("status") == "Cancelled":
            order = record_refund_due(order)
    if payload.admin_note and payload.admin_note.strip():
        note = f"Admin Note: {payload.admin_note.strip()}"
        notes = f"{order['notes']}\n{note}" if order.get("notes") else note
        order = get_db()["order"].find_one_and_update(
            {"_id": order["_id"]},
            {"$set": {"notes": notes, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
    return {"order": serialize_doc(order)}


# Reviews

class ReviewFeatureInput(BaseModel):
    featured: bool


@router.get("/reviews")
def admin_list_reviews(limit: int = Query(50, ge=1, le=100), _: dict = Depends(require_admin)):
    db = get_db()
    docs = list(db["productrating"].find({}).sort("updated_at", -1).limit(limit))
    user_ids = [ObjectId(d["user_id"]) for d in docs if ObjectId.is_valid(d.get("user_id", ""))]
    product_ids = [ObjectId(d["product_id"]) for d in docs if ObjectId.is_valid(d.get("product_id", ""))]
    users = {str(u["_id"]): u.get("name") for u in db["user"].find({"_id": {"$in": user_ids}})}
    products = {str(p["_id"]): p.get("name") for p in db["product"].find({"_id": {"$in": product_ids}})}
    reviews = []
    for doc in docs:
        review = serialize_doc(doc)
        review["user_name"] = users.get(doc["user_id"])
        review["product_name"] = products.get(doc["product_id"])
        review["featured"] = bool(doc.get("featured"))
        reviews.append(review)
    return {"reviews": reviews}


@router.patch("/reviews/{review_id}")
def admin_feature_review(review_id: str, payload: ReviewFeatureInput, _: dict = Depends(require_admin)):
    doc = get_db()["productrating"].find_one_and_update(
        {"_id": to_object_id(review_id, "review id")},
        {"$set": {"featured": payload.featured}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Review not found")
    return {"review": serialize_doc(doc)}


# Templates

class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)
    description: Optional[str] = None
    preview_image_url: Optional[str] = None
    placements: List[TemplatePlacement] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_featured: bool = False
    is_active: bool = True


class TemplateUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    slug: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    preview_image_url: Optional[str] = None
    placements: Optional[List[TemplatePlacement]] = None
    tags: Optional[List[str]] = None
    is_featured: Optional[bool] = None
    is_active: Optional[bool] = None


@router.get("/templates")
def admin_list_templates(_: dict = Depends(require_admin)):
    docs = get_documents("designtemplate")
    return {"templates": [serialize_doc(d) for d in docs]}


@router.post("/templates", status_code=201)
def admin_create_template(payload: TemplateCreate, _: dict = Depends(require_admin)):
    db = get_db()
    slug = slugify(payload.slug)
    if not slug:
        raise HTTPException(status_code=400, detail="Invalid slug")
    if db["designtemplate"].find_one({"slug": slug}, {"_id": 1}):
        raise HTTPException(status_code=409, detail="Slug already in use")
    template = Designtemplate(**{**payload.model_dump(), "slug": slug})
    try:
        template_id = create_document("designtemplate", template)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Slug already in use")
    return {"template": serialize_doc(db["designtemplate"].find_one({"_id": ObjectId(template_id)}))}


@router.patch("/templates/{template_id}")
def admin_update_template(template_id: str, payload: TemplateUpdate, _: dict = Depends(require_admin)):
    db = get_db()
    oid = to_object_id(template_id, "template id")
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "slug" in updates:
        updates["slug"] = slugify(updates["slug"])
        if not updates["slug"]:
            raise HTTPException(status_code=400, detail="Invalid slug")
        if db["designtemplate"].find_one({"slug": updates["slug"], "_id": {"$ne": oid}}, {"_id": 1}):
            raise HTTPException(status_code=409, detail="Slug already in use")
    updates["updated_at"] = now_utc()
    try:
        doc = db["designtemplate"].find_one_and_update(
            {"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Slug already in use")
    if not doc:
        raise HTTPException(status_code=404, detail="Template not found")
    return {"template": serialize_doc(doc)}


@router.delete("/templates/{template_id}")
def admin_delete_template(template_id: str, _: dict = Depends(require_admin)):
    res = get_db()["designtemplate"].delete_one({"_id": to_object_id(template_id, "template id")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Template not found")
    return {"ok": True}


# Custom orders

class CustomOrderUpdate(BaseModel):
    status: Optional[str] = None
    final_total: Optional[float] = Field(None, ge=0)
    admin_note: Optional[str] = Field(None, max_length=1000)


@router.get("/custom-orders")
def admin_list_custom_orders(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    _: dict = Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    collection = get_db()["customorder"]
    paging = _paging(page, page_size)
    cursor = collection.find(query).sort("created_at", -1).skip(paging["skip"]).limit(paging["limit"])
    return {
        "custom_orders": [serialize_doc(d) for d in cursor],
        "total": collection.count_documents(query),
        "page": page,
        "page_size": page_size,
    }


@router.get("/custom-orders/{order_id}")
def admin_get_custom_order(order_id: str, _: dict = Depends(require_admin)):
    doc = get_db()["customorder"].find_one({"_id": to_object_id(order_id, "custom order id")})
    if not doc:
        raise HTTPException(status_code=404, detail="Custom order not found")
    return {"custom_order": serialize_doc(doc)}


@router.patch("/custom-orders/{order_id}")
def admin_update_custom_order(order_id: str, payload: CustomOrderUpdate, admin: dict = Depends(require_admin)):
    db = get_db()
    oid = to_object_id(order_id, "custom order id")
    current = db["customorder"].find_one({"_id": oid})
    if not current:
        raise HTTPException(status_code=404, detail="Custom order not found")
    if payload.status is not None and payload.status not in CUSTOM_ORDER_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status")

    update: Dict[str, Any] = {"$set": {"updated_at": now_utc()}}
    status_changed = payload.status is not None and payload.status != current.get("status")
    if status_changed:
        update["$set"]["status"] = payload.status
        entry = StatusChange(status=payload.status, changed_at=now_utc(), changed_by=admin["id"])
        update["$push"] = {"status_history": entry.model_dump()}
    if payload.final_total is not None:
        update["$set"]["pricing.final_total"] = payload.final_total
    if payload.admin_note is not None:
        update["$set"]["admin_notes"] = payload.admin_note

    doc = db["customorder"].find_one_and_update({"_id": oid}, update, return_document=ReturnDocument.AFTER)
    if status_changed:
        logger.info("Custom order %s moved %s -> %s", order_id, current.get("status"), payload.status)
        notify("custom_order_status_changed", {
            "email": doc.get("email"),
            "order_id": order_id,
            "status": payload.status,
        })
    return {"custom_order": serialize_doc(doc)}


# Users

class AdminUserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: Optional[str] = Field(None, min_length=8)
    role: str = Field("user", pattern="^(user|admin)$")
    status: str = Field("active", pattern="^(active|inactive)$")


class AdminUserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    role: Optional[str] = Field(None, pattern="^(user|admin)$")
    status: Optional[str] = Field(None, pattern="^(active|inactive)$")


def _other_active_admins(user_id: ObjectId) -> int:
    return get_db()["user"].count_documents({"role": "admin", "status": "active", "_id": {"$ne": user_id}})


def _get_user_or_404(user_id: str) -> dict:
    user = get_db()["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/users")
def admin_list_users(
    q: Optional[str] = None,
    role: Optional[str] = None,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    _: dict = Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if q and q.strip():
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}]
    if role:
        query["role"] = role
    if status:
        query["status"] = status
    collection = get_db()["user"]
    paging = _paging(page, page_size)
    cursor = collection.find(query).sort("created_at", -1).skip(paging["skip"]).limit(paging["limit"])
    return {
        "users": [to_public_user(u) for u in cursor],
        "total": collection.count_documents(query),
        "page": page,
        "page_size": page_size,
    }


@router.post("/users", status_code=201)
def admin_create_user(payload: AdminUserCreate, admin: dict = Depends(require_admin)):
    db = get_db()
    email = payload.email.lower()
    if db["user"].find_one({"email": email}, {"_id": 1}):
        raise HTTPException(status_code=409, detail="Email already registered")
    generated = None
    password = payload.password
    if not password:
        generated = secrets.token_urlsafe(GENERATED_PASSWORD_LENGTH)[:GENERATED_PASSWORD_LENGTH]
        password = generated
    user = UserSchema(
        name=payload.name,
        email=email,
        password_hash=hash_password(password),
        role=payload.role,
        status=payload.status,
    )
    user_id = create_document("user", user)
    logger.info("Admin %s created user %s", admin["id"], user_id)
    result: Dict[str, Any] = {"user": to_public_user(db["user"].find_one({"_id": ObjectId(user_id)}))}
    if generated:
        result["generated_password"] = generated
    return result


@router.get("/users/{user_id}")
def admin_get_user(user_id: str, _: dict = Depends(require_admin)):
    return {"user": to_public_user(_get_user_or_404(user_id))}


@router.patch("/users/{user_id}")
def admin_update_user(user_id: str, payload: AdminUserUpdate, admin: dict = Depends(require_admin)):
    target = _get_user_or_404(user_id)
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    demoting = target.get("role") == "admin" and (
        updates.get("role") == "user" or updates.get("status") == "inactive"
    )
    if demoting and str(target["_id"]) == admin["id"]:
        raise HTTPException(status_code=400, detail="You cannot demote or deactivate yourself")
    if demoting and target.get("status") == "active" and _other_active_admins(target["_id"]) == 0:
        raise HTTPException(status_code=409, detail="Cannot demote the last active admin")
    if not updates:
        return {"user": to_public_user(target)}
    updates["updated_at"] = now_utc()
    doc = get_db()["user"].find_one_and_update(
        {"_id": target["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return {"user": to_public_user(doc)}


@router.delete("/users/{user_id}")
def admin_delete_user(user_id: str, admin: dict = Depends(require_admin)):
    target = _get_user_or_404(user_id)
    if str(target["_id"]) == admin["id"]:
        raise HTTPException(status_code=400, detail="You cannot delete yourself")
    if target.get("role") == "admin" and target.get("status") == "active" and _other_active_admins(target["_id"]) == 0:
        raise HTTPException(status_code=409, detail="Cannot delete the last active admin")
    get_db()["user"].delete_one({"_id": target["_id"]})
    logger.info("Admin %s deleted user %s", admin["id"], user_id)
    return {"ok": True}


# Dashboard

def _custom_total(doc: dict) -> float:
    pricing = doc.get("pricing") or {}
    if pricing.get("final_total") is not None:
        return float(pricing["final_total"])
    return float(pricing.get("estimated_total") or 0)


@router.get("/dashboard")
def admin_dashboard(_: dict = Depends(require_admin)):
    db = get_db()
    # Stored datetimes come back naive UTC, so compare naive
    today_start = now_utc().replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=None)
    today_range = {"created_at": {"$gte": today_start, "$lt": today_start + timedelta(days=1)}}

    today_orders = list(db["order"].find(today_range, {"total": 1}))
    today_custom = list(db["customorder"].find(today_range, {"pricing": 1}))
    today_sales = sum(float(o.get("total") or 0) for o in today_orders) + sum(_custom_total(c) for c in today_custom)

    recent_orders = [
        {
            "id": str(o["_id"]),
            "order_number": o.get("order_number"),
            "total": o.get("total"),
            "status": o.get("status"),
            "created_at": o.get("created_at"),
        }
        for o in db["order"].find({}).sort("created_at", -1).limit(5)
    ]
    recent_custom = [
        {
            "id": str(c["_id"]),
            "total": _custom_total(c),
            "status": c.get("status"),
            "created_at": c.get("created_at"),
        }
        for c in db["customorder"].find({}).sort("created_at", -1).limit(5)
    ]

    return serialize_doc({
        "kpis": {
            "today_sales": round(today_sales, 2),
            "today_orders_count": len(today_orders),
            "today_custom_orders_count": len(today_custom),
            "new_users_today": db["user"].count_documents(today_range),
            "pending_custom_jobs_count": db["customorder"].count_documents(
                {"status": {"$in": ["PENDING_REVIEW", "APPROVED"]}}
            ),
            "totals": {
                "users": db["user"].count_documents({}),
                "orders": db["order"].count_documents({}),
                "custom_orders": db["customorder"].count_documents({}),
            },
        },
        "recent": {"orders": recent_orders, "custom_orders": recent_custom},
    })


# Two-factor

class TwoFactorVerifyInput(BaseModel):
    code: str = Field(..., pattern=r"^\d{6}$")


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


@router.post("/2fa/send")
def send_two_factor_code(admin: dict = Depends(require_admin_role)):
    if not admin.get("two_factor_enabled"):
        raise HTTPException(status_code=400, detail="Two-factor authentication is not enabled")
    code = f"{secrets.randbelow(900000) + 100000}"
    get_db()["user"].update_one(
        {"_id": admin["_id"]},
        {"$set": {
            "two_factor_code": hash_code(code),
            "two_factor_expires_at": now_utc() + timedelta(minutes=TWO_FACTOR_CODE_MINUTES),
        }},
    )
    try:
        send_email(build_order_email("admin_two_factor_code", {
            "email": admin["email"],
            "code": code,
            "expires_minutes": str(TWO_FACTOR_CODE_MINUTES),
        }))
    except EmailDeliveryError as exc:
        logger.error("Could not deliver 2FA code to %s: %s", admin["email"], exc)
        raise HTTPException(status_code=502, detail="Could not send verification code")
    return {"success": True}


@router.post("/2fa/verify")
def verify_two_factor_code(payload: TwoFactorVerifyInput, admin: dict = Depends(require_admin_role)):
    if not admin.get("two_factor_enabled"):
        raise HTTPException(status_code=400, detail="Two-factor authentication is not enabled")
    stored = admin.get("two_factor_code")
    expires_at = admin.get("two_factor_expires_at")
    if not stored or not expires_at:
        raise HTTPException(status_code=400, detail="No active verification code")
    if as_utc(expires_at) < now_utc():
        raise HTTPException(status_code=400, detail="Verification code expired")
    if not secrets.compare_digest(hash_code(payload.code), stored):
        raise HTTPException(status_code=400, detail="Invalid verification code")
    get_db()["user"].update_one(
        {"_id": admin["_id"]},
        {"$set": {"two_factor_code": None, "two_factor_expires_at": None, "two_factor_verified_at": now_utc()}},
    )
    return {"success": True}
