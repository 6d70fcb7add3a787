"""
Order lifecycle: checkout, status changes and the documents printed from an order.

Checkout prices every line from the catalog, reserves variant stock with a
conditional update per line, and writes the order only once every line is
reserved. Status changes follow ORDER_TRANSITIONS and append to
status_history, which is never rewritten.
"""
import secrets
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from pymongo import DESCENDING

from auth import get_current_admin, get_current_user, get_optional_user, is_admin
from catalog import effective_price, find_variant, release_variant_stock, reserve_variant_stock
from config import PricingPolicy, get_pricing_policy, get_settings
from database import contains, get_db, serialize_doc, to_object_id, utcnow
from errors import (
    ConcurrentUpdateError,
    InsufficientStockError,
    InvalidStatusTransition,
    NotFoundError,
    OrderTotalsMismatch,
    StoreError,
)
from schemas import Order as OrderSchema, OrderItem, OrderStatus, ShippingAddress, StatusChange

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])

ORDER_TRANSITIONS = {
    "pending": {"processing", "shipped", "delivered", "cancelled", "refunded"},
    "processing": {"shipped", "delivered", "cancelled", "refunded"},
    "shipped": {"delivered", "cancelled", "refunded"},
    "delivered": set(),
    "cancelled": set(),
    "refunded": set(),
}
RESTOCKING_STATUSES = {"cancelled", "refunded"}
TOTALS_TOLERANCE = 0.01


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = None


class AddressUpdate(BaseModel):
    shipping_address: ShippingAddress


def can_transition(current: str, new: str) -> bool:
    return new in ORDER_TRANSITIONS.get(current, set())


def compute_totals(items: List[dict], policy: PricingPolicy) -> dict:
    subtotal = round(sum(item["price"] * item["quantity"] for item in items), 2)
    shipping = 0.0 if subtotal >= policy.free_shipping_threshold else round(policy.flat_shipping_fee, 2)
    tax = round(subtotal * policy.tax_rate, 2)
    total = round(subtotal + shipping + tax, 2)
    return {"subtotal": subtotal, "shipping": shipping, "tax": tax, "total": total}


def check_client_totals(payload: OrderSchema, totals: dict) -> None:
    for field in ("subtotal", "shipping", "tax", "total"):
        supplied = getattr(payload, field)
        if supplied is not None and abs(supplied - totals[field]) > TOTALS_TOLERANCE:
            raise OrderTotalsMismatch(
                f"Order {field} {supplied:.2f} does not match current prices ({totals[field]:.2f})"
            )


def generate_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


def snapshot_items(db, lines) -> List[dict]:
    items = []
    for line in lines:
        product = db["product"].find_one({"_id": to_object_id(line.product_id), "status": "active"})
        if not product:
            raise NotFoundError(f"Product not found: {line.product_id}")
        variant = find_variant(product, line.size, line.color)
        if not variant:
            raise StoreError(f"{product['name']} is not available in size {line.size} / {line.color}")
        images = product.get("images") or [{}]
        items.append(OrderItem(
            product_id=str(product["_id"]),
            name=product["name"],
            image=images[0].get("url"),
            price=effective_price(product),
            quantity=line.quantity,
            size=line.size,
            color=line.color,
            sku=variant.get("sku"),
        ).model_dump())
    return items


def release_items(db, items: List[dict]) -> None:
    for item in items:
        release_variant_stock(db, to_object_id(item["product_id"]), item["size"], item["color"], item["quantity"])


def restock_order(db, order: dict) -> None:
    """Return an order's stock line by line, keeping the lines still owed on the order."""
    pending = list(order["items"])
    while pending:
        item = pending[0]
        try:
            release_variant_stock(db, to_object_id(item["product_id"]), item["size"], item["color"], item["quantity"])
        except Exception:
            logger.error(
                "stock_release_incomplete",
                order_number=order["order_number"],
                released=len(order["items"]) - len(pending),
                pending=[f"{i['product_id']}:{i['size']}/{i['color']}x{i['quantity']}" for i in pending],
            )
            raise
        pending.pop(0)
        db["order"].update_one({"_id": order["_id"]}, {"$set": {"unreleased_items": pending}})


def reserve_items(db, items: List[dict]) -> None:
    """Reserve every line or none of them."""
    reserved = []
    for item in items:
        ok = reserve_variant_stock(
            db, to_object_id(item["product_id"]), item["size"], item["color"], item["quantity"]
        )
        if not ok:
            release_items(db, reserved)
            raise InsufficientStockError(
                f"Insufficient stock for {item['name']} ({item['size']}/{item['color']})"
            )
        reserved.append(item)


def place_order(db, payload: OrderSchema, user: Optional[dict], policy: PricingPolicy) -> dict:
    if not payload.items:
        raise StoreError("Order must contain at least one item")

    items = snapshot_items(db, payload.items)
    totals = compute_totals(items, policy)
    check_client_totals(payload, totals)
    reserve_items(db, items)

    now = utcnow()
    actor = str(user["_id"]) if user else None
    order = {
        "order_number": generate_order_number(),
        "user": actor,
        "guest_email": None if user else (payload.guest_email or payload.shipping_address.email),
        "items": items,
        "shipping_address": payload.shipping_address.model_dump(),
        "payment_method": payload.payment_method,
        **totals,
        "is_paid": False,
        "paid_at": None,
        "is_delivered": False,
        "delivered_at": None,
        "status": "pending",
        "status_history": [
            StatusChange(status="pending", note="Order placed", updated_by=actor, updated_at=now).model_dump()
        ],
        "stock_reserved": True,
        "notes": payload.notes,
        "admin_notes": None,
        "created_at": now,
        "updated_at": now,
    }
    try:
        order["_id"] = db["order"].insert_one(order).inserted_id
    except Exception:
        release_items(db, items)
        raise
    logger.info(
        "order_created",
        order_number=order["order_number"],
        user_id=actor,
        guest_email=order["guest_email"],
        total=order["total"],
        lines=len(items),
    )
    return order


def load_order(db, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise NotFoundError("Order not found")
    return order


def transition_order(db, order_id: str, new_status: str, note: Optional[str], actor: dict) -> dict:
    order = load_order(db, order_id)
    current = order["status"]
    if not can_transition(current, new_status):
        raise InvalidStatusTransition(current, new_status)

    now = utcnow()
    changes = {"status": new_status, "updated_at": now}
    if new_status == "delivered":
        changes.update({"is_delivered": True, "delivered_at": now})
    restock = new_status in RESTOCKING_STATUSES and order.get("stock_reserved", False)
    if restock:
        changes["stock_reserved"] = False
        changes["unreleased_items"] = order["items"]
    entry = StatusChange(status=new_status, note=note, updated_by=str(actor["_id"]), updated_at=now).model_dump()

    # conditioned on the status we validated against
    result = db["order"].update_one(
        {"_id": order["_id"], "status": current},
        {"$set": changes, "$push": {"status_history": entry}},
    )
    if result.modified_count != 1:
        raise ConcurrentUpdateError("Order status was changed by another request, please reload")
    if restock:
        restock_order(db, order)

    logger.info(
        "order_status_updated",
        order_number=order["order_number"],
        old_status=current,
        new_status=new_status,
        admin_id=str(actor["_id"]),
        restocked=restock,
    )
    return db["order"].find_one({"_id": order["_id"]})


def update_shipping_address(db, order: dict, address: ShippingAddress) -> dict:
    """Addresses are editable only before fulfilment starts, whoever asks."""
    if order["status"] != "pending":
        raise StoreError("Address can only be updated for pending orders")
    result = db["order"].update_one(
        {"_id": order["_id"], "status": "pending"},
        {"$set": {"shipping_address": address.model_dump(), "updated_at": utcnow()}},
    )
    if result.modified_count != 1:
        raise StoreError("Address can only be updated for pending orders")
    logger.info("order_address_updated", order_number=order["order_number"])
    return db["order"].find_one({"_id": order["_id"]})


def ensure_can_view(order: dict, user: dict) -> None:
    if order.get("user") != str(user["_id"]) and not is_admin(user):
        raise HTTPException(403, "Not authorized to view this order")


def _address_lines(address: dict) -> List[str]:
    return [
        f"{address.get('first_name', '')} {address.get('last_name', '')}".strip(),
        address.get("street", ""),
        f"{address.get('city', '')}, {address.get('state', '')} {address.get('zip_code', '')}",
        address.get("country", ""),
    ]


def render_invoice(order: dict, customer: Optional[dict], store_name: str) -> str:
    lines = [
        f"{store_name.upper()} INVOICE",
        "================",
        "",
        f"Invoice #: {order['order_number']}",
        f"Date: {order['created_at']:%Y-%m-%d}",
        f"Customer: {customer.get('name') if customer else 'Guest'}",
        f"Email: {(customer or {}).get('email') or order.get('guest_email') or 'N/A'}",
        "",
        "SHIPPING ADDRESS:",
        *_address_lines(order.get("shipping_address") or {}),
        "",
        "ITEMS:",
    ]
    for item in order["items"]:
        lines.append(
            f"{item['name']} ({item['size']}/{item['color']}) - Qty: {item['quantity']} x "
            f"${item['price']:.2f} = ${item['price'] * item['quantity']:.2f}"
        )
    lines += [
        "",
        "SUMMARY:",
        f"Subtotal: ${order['subtotal']:.2f}",
        f"Shipping: ${order['shipping']:.2f}",
        f"Tax: ${order['tax']:.2f}",
        f"TOTAL: ${order['total']:.2f}",
        "",
        f"Payment Status: {'PAID' if order.get('is_paid') else 'UNPAID'}",
        f"Payment Method: {order.get('payment_method') or 'N/A'}",
        "",
        f"Thank you for shopping with {store_name}!",
    ]
    return "\n".join(lines) + "\n"


def render_shipping_label(order: dict, store_name: str) -> str:
    items = order.get("items", [])
    lines = [
        f"FROM: {store_name.upper()}",
        "",
        "SHIP TO:",
        *_address_lines(order.get("shipping_address") or {}),
        f"Phone: {(order.get('shipping_address') or {}).get('phone', '')}",
        "",
        f"Order Number: {order['order_number']}",
        f"Order Date: {order['created_at']:%Y-%m-%d}",
        f"Payment Status: {'PAID' if order.get('is_paid') else 'UNPAID'}",
        f"Order Status: {order['status'].upper()}",
        f"Items: {sum(i['quantity'] for i in items)}",
        "",
    ]
    for index, item in enumerate(items, start=1):
        lines.append(f"{index}. {item['name']}  Size: {item['size']}  Color: {item['color']}  Qty: {item['quantity']}")
    lines += ["", f"*{order['order_number']}*"]
    return "\n".join(lines) + "\n"


def _attachment(text: str, filename: str) -> PlainTextResponse:
    return PlainTextResponse(text, headers={"Content-Disposition": f'attachment; filename="{filename}"'})


# Routes

@router.post("", status_code=201)
def create_order(
    payload: OrderSchema,
    current: Optional[dict] = Depends(get_optional_user),
    policy: PricingPolicy = Depends(get_pricing_policy),
    db=Depends(get_db),
):
    order = place_order(db, payload, current, policy)
    return {"success": True, "message": "Order created successfully", "order": serialize_doc(order)}


@router.get("")
def my_orders(
    status: Optional[OrderStatus] = None,
    search: Optional[str] = None,
    current: dict = Depends(get_current_user),
    db=Depends(get_db),
):
    query = {"user": str(current["_id"])}
    if status:
        query["status"] = status
    if search:
        query["$or"] = [
            {"order_number": contains(search)},
            {"items.name": contains(search)},
        ]
    orders = [serialize_doc(o) for o in db["order"].find(query).sort("created_at", DESCENDING)]
    return {"success": True, "orders": orders}


@router.get("/{order_id}")
def get_order(order_id: str, current: dict = Depends(get_current_user), db=Depends(get_db)):
    order = load_order(db, order_id)
    ensure_can_view(order, current)
    return {"success": True, "order": serialize_doc(order)}


@router.put("/{order_id}/status")
def update_order_status(
    order_id: str, payload: StatusUpdate, admin: dict = Depends(get_current_admin), db=Depends(get_db)
):
    order = transition_order(db, order_id, payload.status, payload.note, admin)
    return {"success": True, "message": "Order status updated successfully", "order": serialize_doc(order)}


@router.put("/{order_id}/address")
def update_order_address(
    order_id: str, payload: AddressUpdate, current: dict = Depends(get_current_user), db=Depends(get_db)
):
    order = load_order(db, order_id)
    if order.get("user") != str(current["_id"]):
        raise HTTPException(403, "Not authorized to update this order")
    order = update_shipping_address(db, order, payload.shipping_address)
    return {"success": True, "message": "Shipping address updated successfully", "order": serialize_doc(order)}


@router.get("/{order_id}/invoice")
def download_invoice(order_id: str, current: dict = Depends(get_current_user), db=Depends(get_db)):
    order = load_order(db, order_id)
    ensure_can_view(order, current)
    if not order.get("is_paid"):
        raise HTTPException(400, "Invoice not available for unpaid orders")
    customer = db["user"].find_one({"_id": to_object_id(order["user"])}) if order.get("user") else None
    text = render_invoice(order, customer, get_settings().store_name)
    return _attachment(text, f"invoice-{order['order_number']}.txt")


@router.get("/{order_id}/shipping-label")
def download_shipping_label(order_id: str, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    order = load_order(db, order_id)
    text = render_shipping_label(order, get_settings().store_name)
    return _attachment(text, f"shipping-label-{order['order_number']}.txt")
