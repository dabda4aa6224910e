"""
Payment providers

Stripe Checkout and Chapa are called through their REST APIs with requests.
Provider callbacks never trust the inbound payload on its own: the session or
transaction is always fetched back from the provider before an order is
marked paid.
"""
import hashlib
import hmac
import logging
import secrets
from typing import Any, Dict, Optional

import requests
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

import config
from auth import get_current_user
from database import get_db, now_utc, serialize_doc
from orders import OrderTransitionError, apply_status_change, find_order

logger = logging.getLogger(__name__)

STRIPE_API_URL = "https://api.stripe.com/v1"
CHAPA_API_URL = "https://api.chapa.co/v1"
PROVIDER_TIMEOUT = 15

router = APIRouter()


# Utilities

def compute_refund_amount(total: float) -> float:
    fee_percent = config.REFUND_FEE_PERCENT
    if not fee_percent:
        return total
    fee = total * fee_percent / 100
    return max(0.0, round(total - fee, 2))


def record_refund_due(order: dict) -> dict:
    """Note the amount owed back on a cancelled order that was already paid"""
    if order.get("payment_status") != "paid" or order.get("refund_amount") is not None:
        return order
    amount = compute_refund_amount(float(order["total"]))
    db = get_db()
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "refund_amount": None},
        {"$set": {"refund_amount": amount, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        return db["order"].find_one({"_id": order["_id"]})
    logger.info("Order %s cancelled after payment, refund due %.2f", updated.get("order_number"), amount)
    return updated


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not secret:
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def mark_order_paid(order_ref: str, method: str, reference: Optional[str] = None) -> Optional[dict]:
    """Record a verified payment; calling it again for a paid order is a no-op"""
    order = find_order(order_ref)
    if not order:
        return None
    if order.get("payment_status") == "paid":
        return order

    db = get_db()
    updates: Dict[str, Any] = {
        "payment_status": "paid",
        "payment_verified": True,
        "payment_method": method,
        "updated_at": now_utc(),
    }
    if reference:
        updates["payment_reference"] = reference
    result = db["order"].update_one({"_id": order["_id"], "payment_status": {"$ne": "paid"}}, {"$set": updates})
    order = db["order"].find_one({"_id": order["_id"]})
    if result.modified_count == 0:
        # Another confirmation recorded the payment first
        return order
    logger.info("Order %s paid via %s (%s)", order.get("order_number"), method, reference)

    if order.get("status") == "Pending":
        try:
            order = apply_status_change(order, "Accepted", f"payment:{method}")
        except OrderTransitionError as exc:
            logger.info("Order %s status moved during payment: %s", order.get("order_number"), exc)
            order = db["order"].find_one({"_id": order["_id"]})
    return order


def _payable_order(order_id: str, user: dict) -> dict:
    order = find_order(order_id, {"user_id": user["id"]})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.get("payment_status") == "paid":
        raise HTTPException(status_code=409, detail="Order already paid")
    if order.get("status") == "Cancelled":
        raise HTTPException(status_code=409, detail="Order is cancelled")
    return order


# Stripe

def _stripe_request(method: str, path: str, data: Optional[dict] = None) -> dict:
    if not config.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Stripe not configured")
    try:
        response = requests.request(
            method,
            f"{STRIPE_API_URL}{path}",
            data=data,
            auth=(config.STRIPE_SECRET_KEY, ""),
            timeout=PROVIDER_TIMEOUT,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.error("Stripe %s %s failed: %s", method, path, exc)
        raise HTTPException(status_code=502, detail="Payment provider error")
    return response.json()


class StripeSessionInput(BaseModel):
    order_id: str = Field(..., min_length=1)


class StripeVerifyInput(BaseModel):
    session_id: str = Field(..., min_length=1)


@router.post("/api/stripe/create-checkout-session")
def create_checkout_session(payload: StripeSessionInput, current_user: dict = Depends(get_current_user)):
    order = _payable_order(payload.order_id, current_user)
    order_id = str(order["_id"])
    form = {
        "mode": "payment",
        "payment_method_types[0]": "card",
        "line_items[0][quantity]": 1,
        "line_items[0][price_data][currency]": order.get("currency", "USD").lower(),
        "line_items[0][price_data][unit_amount]": int(round(order["total"] * 100)),
        "line_items[0][price_data][product_data][name]": "Duha Threads Order",
        "line_items[0][price_data][product_data][description]": f"Order {order['order_number']}",
        "success_url": f"{config.APP_BASE_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{config.APP_BASE_URL}/checkout",
        "customer_email": order.get("email"),
        "metadata[order_id]": order_id,
    }
    session = _stripe_request("POST", "/checkout/sessions", form)
    logger.info("Created Stripe session %s for order %s", session.get("id"), order["order_number"])
    return {"session_id": session.get("id"), "url": session.get("url")}


@router.post("/api/stripe/verify-session")
def verify_stripe_session(payload: StripeVerifyInput, current_user: dict = Depends(get_current_user)):
    session = _stripe_request("GET", f"/checkout/sessions/{payload.session_id}")
    paid = session.get("payment_status") == "paid"
    order_id = (session.get("metadata") or {}).get("order_id")
    if not paid or not order_id:
        return {"paid": False, "status": session.get("payment_status")}
    if not find_order(order_id, {"user_id": current_user["id"]}):
        logger.warning("User %s verified Stripe session %s for an order they do not own", current_user["id"], session.get("id"))
        raise HTTPException(status_code=404, detail="Order not found")

    order = mark_order_paid(order_id, "stripe", session.get("id"))
    if not order:
        logger.warning("Stripe session %s references unknown order %s", session.get("id"), order_id)
        raise HTTPException(status_code=404, detail="Order not found")
    return {"paid": True, "status": session.get("payment_status"), "order": serialize_doc(order)}


# Chapa

def _chapa_headers() -> dict:
    if not config.CHAPA_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Chapa not configured")
    return {"Authorization": f"Bearer {config.CHAPA_SECRET_KEY}"}


def verify_chapa_transaction(tx_ref: str) -> dict:
    headers = _chapa_headers()
    try:
        response = requests.get(f"{CHAPA_API_URL}/transaction/verify/{tx_ref}", headers=headers, timeout=PROVIDER_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.error("Chapa verify %s failed: %s", tx_ref, exc)
        raise HTTPException(status_code=502, detail="Payment provider error")
    return response.json()


def settle_chapa_transaction(tx_ref: str) -> Dict[str, Any]:
    result = verify_chapa_transaction(tx_ref)
    data = result.get("data") or {}
    status = str(data.get("status") or "").lower()
    order = get_db()["order"].find_one({"payment_reference": tx_ref})
    if not order:
        logger.warning("Chapa transaction %s has no matching order", tx_ref)
        raise HTTPException(status_code=404, detail="Order not found")
    if status != "success":
        return {"paid": False, "status": status, "order_number": order.get("order_number")}
    order = mark_order_paid(str(order["_id"]), "chapa", tx_ref)
    return {"paid": True, "status": status, "order_number": order.get("order_number")}


class ChapaInitInput(BaseModel):
    order_id: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone_number: Optional[str] = None


@router.post("/api/chapa/initialize")
def initialize_chapa(payload: ChapaInitInput, current_user: dict = Depends(get_current_user)):
    headers = _chapa_headers()
    order = _payable_order(payload.order_id, current_user)
    tx_ref = f"{order['order_number']}-{secrets.token_hex(4)}"
    body = {
        "amount": f"{order['total']:.2f}",
        "currency": "ETB",
        "email": order.get("email"),
        "first_name": payload.first_name,
        "last_name": payload.last_name,
        "phone_number": payload.phone_number,
        "tx_ref": tx_ref,
        "callback_url": f"{config.APP_BASE_URL}/api/chapa/callback",
        "return_url": f"{config.APP_BASE_URL}/orders/{order['_id']}",
        "customization": {"title": "Duha Threads", "description": f"Order {order['order_number']}"},
    }
    try:
        response = requests.post(f"{CHAPA_API_URL}/transaction/initialize", json=body, headers=headers, timeout=PROVIDER_TIMEOUT)
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.error("Chapa initialize failed for %s: %s", order["order_number"], exc)
        raise HTTPException(status_code=502, detail="Payment provider error")

    checkout_url = (data.get("data") or {}).get("checkout_url")
    if not response.ok or not checkout_url:
        raise HTTPException(status_code=400, detail=data.get("message") or "Failed to initialize payment")

    get_db()["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_method": "chapa", "payment_reference": tx_ref, "updated_at": now_utc()}},
    )
    return {"checkout_url": checkout_url, "tx_ref": tx_ref}


@router.get("/api/chapa/callback")
def chapa_callback(trx_ref: Optional[str] = Query(None), tx_ref: Optional[str] = Query(None)):
    reference = trx_ref or tx_ref
    if not reference:
        raise HTTPException(status_code=400, detail="Missing transaction reference")
    return settle_chapa_transaction(reference)


@router.post("/api/chapa/webhook")
async def chapa_webhook(request: Request):
    raw_body = await request.body()
    signature = request.headers.get("Chapa-Signature") or request.headers.get("x-chapa-signature")
    if not verify_signature(raw_body, signature, config.CHAPA_WEBHOOK_SECRET):
        logger.warning("Rejected Chapa webhook with bad signature")
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        event = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    reference = event.get("tx_ref") or event.get("trx_ref") or (event.get("data") or {}).get("tx_ref")
    if not reference:
        raise HTTPException(status_code=400, detail="Missing transaction reference")
    result = await run_in_threadpool(settle_chapa_transaction, reference)
    return {"received": True, **result}
