import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

from auth import get_current_user, get_optional_user
from database import create_document, get_db, is_object_id, now_utc, serialize_doc
from orders import is_delivered_status
from schemas import Productrating, primary_image

logger = logging.getLogger(__name__)

router = APIRouter()

ProductSort = Literal["newest", "price_asc", "price_desc", "best_selling"]

SORTS = {
    "newest": [("created_at", -1)],
    "price_asc": [("base_price", 1)],
    "price_desc": [("base_price", -1)],
    "best_selling": [("sales_count", -1)],
}


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def to_product_list_item(doc: dict) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "slug": doc.get("slug"),
        "base_price": doc.get("base_price"),
        "category": doc.get("category"),
        "primary_image": primary_image(doc),
        "sales_count": doc.get("sales_count", 0),
        "sku": doc.get("sku"),
        "rating_average": doc.get("rating_average", 0),
        "rating_count": doc.get("rating_count", 0),
    }


def to_featured_item(doc: dict) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "slug": doc.get("slug"),
        "name": doc.get("name"),
        "description": doc.get("description"),
        "base_price": doc.get("base_price"),
        "primary_image": primary_image(doc),
        "featured_rank": doc.get("featured_rank"),
        "rating_average": doc.get("rating_average", 0),
        "rating_count": doc.get("rating_count", 0),
    }


def identifier_query(id_or_slug: str) -> dict:
    if is_object_id(id_or_slug):
        return {"_id": ObjectId(id_or_slug)}
    return {"slug": id_or_slug}


def recompute_product_rating(product_id: str) -> Dict[str, Any]:
    db = get_db()
    stats = list(db["productrating"].aggregate([
        {"$match": {"product_id": product_id}},
        {"$group": {"_id": "$product_id", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]))
    rating_average = round(float(stats[0]["avg"]), 2) if stats else 0
    rating_count = int(stats[0]["count"]) if stats else 0
    db["product"].update_one(
        {"_id": ObjectId(product_id)},
        {"$set": {"rating_average": rating_average, "rating_count": rating_count}},
    )
    return {"rating_average": rating_average, "rating_count": rating_count}


# Products

@router.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    page_size: int = Query(12, ge=1, le=60),
    category: Optional[str] = None,
    size: Optional[str] = None,
    color: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    sort: ProductSort = "newest",
):
    query: Dict[str, Any] = {"is_active": True}
    if category:
        query["category"] = category
    if size:
        query["sizes"] = size
    if color:
        query["colors"] = color
    price_filter: Dict[str, Any] = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["base_price"] = price_filter

    collection = get_db()["product"]
    total = collection.count_documents(query)
    skip = (page - 1) * page_size
    cursor = collection.find(query).sort(SORTS[sort]).skip(skip).limit(page_size)
    products = [to_product_list_item(d) for d in cursor]
    return {
        "products": products,
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": max(1, -(-total // page_size)),
    }


@router.get("/api/products/featured")
def featured_products(limit: int = Query(8, ge=1, le=24), exclude: Optional[str] = None):
    query: Dict[str, Any] = {"is_active": True, "is_featured": True}
    if exclude and is_object_id(exclude):
        query["_id"] = {"$ne": ObjectId(exclude)}
    docs = list(get_db()["product"].find(query))
    # Ranked items first (ascending), unranked last, newest first within ties
    docs.sort(key=lambda d: d.get("created_at") or datetime.min, reverse=True)
    docs.sort(key=lambda d: (d.get("featured_rank") is None, d.get("featured_rank") or 0))
    return {"products": [to_featured_item(d) for d in docs[:limit]]}


@router.get("/api/products/hero")
def hero_product():
    docs = list(get_db()["product"].find({"is_active": True, "is_hero": True}).sort("updated_at", -1).limit(1))
    return {"product": to_featured_item(docs[0]) if docs else None}


@router.get("/api/products/{id_or_slug}")
def get_product(id_or_slug: str):
    doc = get_db()["product"].find_one_and_update(
        {**identifier_query(id_or_slug), "is_active": True},
        {"$inc": {"view_count": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    product = serialize_doc(doc)
    product["primary_image"] = primary_image(doc)
    return {"product": product}


# Ratings

class RatingInput(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    order_id: Optional[str] = Field(None, pattern=r"^[a-fA-F0-9]{24}$")


def _find_product_id(id_or_slug: str) -> str:
    product = get_db()["product"].find_one(identifier_query(id_or_slug), {"_id": 1})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return str(product["_id"])


@router.get("/api/products/{id_or_slug}/rating")
def get_product_rating(id_or_slug: str, user: Optional[dict] = Depends(get_optional_user)):
    db = get_db()
    product = db["product"].find_one(identifier_query(id_or_slug))
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    product_id = str(product["_id"])

    user_rating = None
    if user:
        doc = db["productrating"].find_one({"product_id": product_id, "user_id": user["id"]})
        if doc:
            user_rating = {
                "rating": doc["rating"],
                "comment": doc.get("comment"),
                "updated_at": doc.get("updated_at"),
                "order_id": doc.get("order_id"),
            }

    ratings = list(db["productrating"].find({"product_id": product_id}).sort("updated_at", -1).limit(20))
    author_ids = [ObjectId(r["user_id"]) for r in ratings if ObjectId.is_valid(r.get("user_id", ""))]
    names = {str(u["_id"]): u.get("name") for u in db["user"].find({"_id": {"$in": author_ids}}, {"name": 1})}
    reviews = [
        {
            "id": str(r["_id"]),
            "rating": r["rating"],
            "comment": r.get("comment"),
            "updated_at": r.get("updated_at"),
            "author": names.get(r["user_id"]) or "Verified customer",
            "featured": bool(r.get("featured")),
            "is_owner": bool(user and r["user_id"] == user["id"]),
        }
        for r in ratings
    ]

    eligibility = {"eligible": False, "order_id": None, "order_number": None}
    if user:
        candidates = db["order"].find({"user_id": user["id"], "items.product_id": product_id}).sort("updated_at", -1)
        delivered = [o for o in candidates if is_delivered_status(o.get("status"))]
        if delivered:
            eligibility = {
                "eligible": True,
                "order_id": str(delivered[0]["_id"]),
                "order_number": delivered[0].get("order_number"),
            }

    return serialize_doc({
        "rating_average": product.get("rating_average", 0),
        "rating_count": product.get("rating_count", 0),
        "user_rating": user_rating,
        "reviews": reviews,
        "review_eligibility": eligibility,
    })


@router.post("/api/products/{id_or_slug}/rating")
def rate_product(id_or_slug: str, payload: RatingInput, user: dict = Depends(get_current_user)):
    db = get_db()
    product_id = _find_product_id(id_or_slug)
    comment = payload.comment.strip() if isinstance(payload.comment, str) else None

    linked_order_id = None
    if payload.order_id:
        order = db["order"].find_one({
            "_id": ObjectId(payload.order_id),
            "user_id": user["id"],
            "items.product_id": product_id,
        })
        if not order:
            raise HTTPException(status_code=400, detail="Order not found for review")
        if not is_delivered_status(order.get("status")):
            raise HTTPException(status_code=400, detail="Order has not been delivered yet")
        linked_order_id = str(order["_id"])

    existing = db["productrating"].find_one({"product_id": product_id, "user_id": user["id"]})
    if existing:
        updates: Dict[str, Any] = {"rating": payload.rating, "comment": comment or None, "updated_at": now_utc()}
        if linked_order_id:
            updates["order_id"] = linked_order_id
        db["productrating"].update_one({"_id": existing["_id"]}, {"$set": updates})
        saved = {**existing, **updates}
    else:
        rating = Productrating(
            product_id=product_id,
            user_id=user["id"],
            order_id=linked_order_id,
            rating=payload.rating,
            comment=comment or None,
        )
        create_document("productrating", rating)
        saved = rating.model_dump()

    stats = recompute_product_rating(product_id)
    logger.info("User %s rated product %s: %d", user["id"], product_id, payload.rating)
    return {
        **stats,
        "user_rating": {
            "rating": saved["rating"],
            "comment": saved.get("comment"),
            "order_id": saved.get("order_id"),
        },
    }


@router.get("/api/reviews/featured")
def featured_reviews(limit: int = Query(4, ge=1, le=20)):
    db = get_db()
    docs = list(db["productrating"].find({"featured": True}).sort("updated_at", -1).limit(limit))
    user_ids = [ObjectId(d["user_id"]) for d in docs if ObjectId.is_valid(d.get("user_id", ""))]
    product_ids = [ObjectId(d["product_id"]) for d in docs if ObjectId.is_valid(d.get("product_id", ""))]
    users = {str(u["_id"]): u.get("name") for u in db["user"].find({"_id": {"$in": user_ids}})}
    products = {str(p["_id"]): p.get("name") for p in db["product"].find({"_id": {"$in": product_ids}})}
    reviews: List[dict] = [
        {
            "id": str(d["_id"]),
            "message": d.get("comment") or "",
            "rating": d["rating"],
            "author": users.get(d["user_id"]) or "Verified customer",
            "product_name": products.get(d["product_id"]),
        }
        for d in docs
    ]
    return {"reviews": reviews}
