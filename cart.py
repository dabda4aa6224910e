from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import get_current_user
from database import get_db, is_object_id, now_utc, serialize_doc, to_object_id
from schemas import Cartitem, Wishlistitem, primary_image

router = APIRouter()


# Cart

class CartLine(BaseModel):
    product_id: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    color: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)


class CartLineUpdate(BaseModel):
    quantity: Optional[int] = Field(None, ge=1)
    size: Optional[str] = Field(None, min_length=1)
    color: Optional[str] = Field(None, min_length=1)


class CartAdjust(BaseModel):
    product_id: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    color: str = Field(..., min_length=1)
    delta: int = Field(..., ge=-1, le=1)


class CartMerge(BaseModel):
    items: List[CartLine] = Field(..., min_length=1)


class CartPreview(BaseModel):
    items: List[CartLine] = Field(default_factory=list, max_length=50)


def find_active_product(product_id: str) -> Optional[dict]:
    if not is_object_id(product_id):
        return None
    return get_db()["product"].find_one({"_id": ObjectId(product_id), "is_active": True})


def upsert_cart_line(user_id: str, line: CartLine) -> dict:
    """Add quantity to the (user, product, size, color) line, creating it if needed"""
    item = Cartitem(user_id=user_id, product_id=line.product_id, size=line.size, color=line.color, quantity=line.quantity)
    key = item.model_dump(exclude={"quantity"})
    update = {
        "$setOnInsert": {**key, "created_at": now_utc()},
        "$inc": {"quantity": item.quantity},
        "$set": {"updated_at": now_utc()},
    }
    collection = get_db()["cartitem"]
    try:
        return collection.find_one_and_update(key, update, upsert=True, return_document=ReturnDocument.AFTER)
    except DuplicateKeyError:
        # A concurrent upsert created the line first; the retry matches it and increments
        return collection.find_one_and_update(key, update, upsert=True, return_document=ReturnDocument.AFTER)


def find_cart_clash(line: dict, size: str, color: str) -> Optional[dict]:
    return get_db()["cartitem"].find_one({
        "user_id": line["user_id"],
        "product_id": line["product_id"],
        "size": size,
        "color": color,
        "_id": {"$ne": line["_id"]},
    })


def fold_cart_line(line: dict, target: dict, quantity: int) -> dict:
    """Move quantity onto the existing line and drop the moved one"""
    db = get_db()
    merged = db["cartitem"].find_one_and_update(
        {"_id": target["_id"]},
        {"$inc": {"quantity": quantity}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    db["cartitem"].delete_one({"_id": line["_id"]})
    return merged


@router.get("/api/cart")
def get_cart(current_user: dict = Depends(get_current_user)):
    items = get_db()["cartitem"].find({"user_id": current_user["id"]}).sort("created_at", 1)
    return {"items": [serialize_doc(i) for i in items]}


@router.post("/api/cart")
def add_to_cart(item: CartLine, current_user: dict = Depends(get_current_user)):
    if not find_active_product(item.product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    doc = upsert_cart_line(current_user["id"], item)
    return {"item": serialize_doc(doc)}


@router.patch("/api/cart/{item_id}")
def update_cart_item(item_id: str, data: CartLineUpdate, current_user: dict = Depends(get_current_user)):
    db = get_db()
    oid = to_object_id(item_id, "cart item id")
    line = db["cartitem"].find_one({"_id": oid, "user_id": current_user["id"]})
    if not line:
        raise HTTPException(status_code=404, detail="Not found")
    updates = data.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        return {"item": serialize_doc(line)}

    size = updates.get("size", line["size"])
    color = updates.get("color", line["color"])
    quantity = updates.get("quantity", line["quantity"])
    moved = (size, color) != (line["size"], line["color"])
    if moved:
        clash = find_cart_clash(line, size, color)
        if clash:
            # Fold into the existing line to keep one line per product/size/color
            return {"item": serialize_doc(fold_cart_line(line, clash, quantity)), "merged": True}

    updates["updated_at"] = now_utc()
    try:
        doc = db["cartitem"].find_one_and_update(
            {"_id": oid, "user_id": current_user["id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # The target line was created after the clash check
        clash = find_cart_clash(line, size, color) if moved else None
        if not clash:
            raise HTTPException(status_code=409, detail="Cart changed, please retry")
        return {"item": serialize_doc(fold_cart_line(line, clash, quantity)), "merged": True}
    if not doc:
        raise HTTPException(status_code=404, detail="Not found")
    return {"item": serialize_doc(doc)}


@router.delete("/api/cart/{item_id}")
def delete_cart_item(item_id: str, current_user: dict = Depends(get_current_user)):
    oid = to_object_id(item_id, "cart item id")
    res = get_db()["cartitem"].delete_one({"_id": oid, "user_id": current_user["id"]})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Not found")
    return {"ok": True}


@router.delete("/api/cart")
def clear_cart(current_user: dict = Depends(get_current_user)):
    res = get_db()["cartitem"].delete_many({"user_id": current_user["id"]})
    return {"ok": True, "deleted": res.deleted_count}


@router.post("/api/cart/adjust")
def adjust_cart_item(data: CartAdjust, current_user: dict = Depends(get_current_user)):
    db = get_db()
    key = {"user_id": current_user["id"], "product_id": data.product_id, "size": data.size, "color": data.color}
    existing = db["cartitem"].find_one(key)
    if not existing:
        raise HTTPException(status_code=404, detail="Item not found")
    if existing["quantity"] + data.delta <= 0:
        db["cartitem"].delete_one({"_id": existing["_id"]})
        return {"deleted": True}
    doc = db["cartitem"].find_one_and_update(
        {"_id": existing["_id"]},
        {"$inc": {"quantity": data.delta}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"item": serialize_doc(doc)}


@router.post("/api/cart/merge")
def merge_guest_cart(payload: CartMerge, current_user: dict = Depends(get_current_user)):
    for line in payload.items:
        upsert_cart_line(current_user["id"], line)
    return {"merged": len(payload.items)}


@router.post("/api/cart/preview")
def preview_cart(payload: CartPreview):
    if not payload.items:
        return {"items": []}
    product_ids = {i.product_id for i in payload.items if is_object_id(i.product_id)}
    products = get_db()["product"].find({"_id": {"$in": [ObjectId(pid) for pid in product_ids]}})
    product_map = {str(p["_id"]): p for p in products}

    enriched: List[Dict[str, Any]] = []
    for index, item in enumerate(payload.items):
        product = product_map.get(item.product_id)
        summary = None
        if product:
            summary = {
                "id": str(product["_id"]),
                "name": product.get("name"),
                "slug": product.get("slug"),
                "description": product.get("description"),
                "base_price": product.get("base_price"),
                "images": product.get("images", []),
                "primary_image": primary_image(product),
                "rating_average": product.get("rating_average"),
                "rating_count": product.get("rating_count"),
                "colors": product.get("colors", []),
                "sizes": product.get("sizes", []),
            }
        enriched.append({
            "id": f"{item.product_id}-{item.size}-{item.color}-{index}",
            **item.model_dump(),
            "product": summary,
        })
    return {"items": enriched}


# Wishlist

class WishlistInput(BaseModel):
    product_id: str = Field(..., min_length=1)


@router.get("/api/wishlist")
def get_wishlist(current_user: dict = Depends(get_current_user)):
    items = get_db()["wishlistitem"].find({"user_id": current_user["id"]}).sort("created_at", -1)
    return {"items": [serialize_doc(i) for i in items]}


@router.post("/api/wishlist")
def add_to_wishlist(payload: WishlistInput, current_user: dict = Depends(get_current_user)):
    if not find_active_product(payload.product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    key = Wishlistitem(user_id=current_user["id"], product_id=payload.product_id).model_dump()
    doc = get_db()["wishlistitem"].find_one_and_update(
        key,
        {"$setOnInsert": {**key, "created_at": now_utc(), "updated_at": now_utc()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return {"item": serialize_doc(doc)}


@router.delete("/api/wishlist/{item_id}")
def remove_from_wishlist(item_id: str, current_user: dict = Depends(get_current_user)):
    oid = to_object_id(item_id, "wishlist item id")
    res = get_db()["wishlistitem"].delete_one({"_id": oid, "user_id": current_user["id"]})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Not found")
    return {"ok": True}
