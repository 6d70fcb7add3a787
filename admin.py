from datetime import datetime
from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument

from auth import get_current_admin, public_user
from database import contains, get_db, paginate, pagination_meta, serialize_doc, to_object_id, utcnow
from errors import NotFoundError
from orders import load_order, update_shipping_address
from reports import (
    month_bounds,
    monthly_export,
    monthly_report,
    paid_between,
    revenue_series,
    revenue_summary,
    year_bounds,
    yearly_export,
    yearly_report,
)
from schemas import Address, OrderStatus, Role, ShippingAddress

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

USER_SORT_FIELDS = {"created_at", "name", "email", "last_login", "role"}
ORDER_SORT_FIELDS = {"created_at", "total", "order_number", "status"}


class UserStatus(BaseModel):
    is_active: bool


class UserRole(BaseModel):
    role: Role


class UserDetails(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None


class OrderDetails(BaseModel):
    shipping_address: Optional[ShippingAddress] = None
    is_paid: Optional[bool] = None
    notes: Optional[str] = None


def _load_user(db, user_id: str) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    if not user:
        raise NotFoundError("User not found")
    return user


def _active_admins(db) -> int:
    return db["user"].count_documents({"role": "admin", "is_active": True})


def _current_year_month():
    now = utcnow()
    return now.year, now.month


# Dashboard

@router.get("/stats")
def admin_stats(admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    now = utcnow()
    month_start, month_end = month_bounds(now.year, now.month)
    year_start, year_end = year_bounds(now.year)
    series_start = datetime(now.year - 1, now.month, 1)

    recent = db["order"].find(
        {}, {"order_number": 1, "total": 1, "status": 1, "created_at": 1, "user": 1, "guest_email": 1}
    ).sort("created_at", -1).limit(5)

    stats = {
        "total_users": db["user"].count_documents({"role": "user", "is_active": True}),
        "total_admins": _active_admins(db),
        "total_products": db["product"].count_documents({"status": "active"}),
        "total_orders": db["order"].count_documents({}),
        "total_revenue": revenue_summary(db, {"is_paid": True})["total_revenue"],
        "monthly_revenue": revenue_summary(db, paid_between(month_start, month_end))["total_revenue"],
        "yearly_revenue": revenue_summary(db, paid_between(year_start, year_end))["total_revenue"],
        "recent_orders": [serialize_doc(o) for o in recent],
        "monthly_stats": revenue_series(db, series_start),
    }
    logger.info("admin_stats_fetched", total_orders=stats["total_orders"])
    return {"success": True, "stats": stats}


# Users

@router.get("/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    role: Optional[Role] = None,
    status: Optional[Literal["active", "inactive"]] = None,
    sort: str = "created_at",
    order: Literal["asc", "desc"] = "desc",
    admin: dict = Depends(get_current_admin),
    db=Depends(get_db),
):
    query = {}
    if search:
        query["$or"] = [
            {"name": contains(search)},
            {"email": contains(search)},
        ]
    if role:
        query["role"] = role
    if status:
        query["is_active"] = status == "active"
    sort_field = sort if sort in USER_SORT_FIELDS else "created_at"
    total = db["user"].count_documents(query)
    cursor = paginate(db["user"].find(query).sort(sort_field, -1 if order == "desc" else 1), page, limit)
    users = [public_user(u) for u in cursor]
    return {"success": True, "users": users, "pagination": pagination_meta(page, limit, total)}


@router.put("/users/{user_id}/status")
def set_user_status(
    user_id: str, payload: UserStatus, admin: dict = Depends(get_current_admin), db=Depends(get_db)
):
    if user_id == str(admin["_id"]):
        raise HTTPException(400, "Cannot change your own status")
    user = _load_user(db, user_id)
    if user.get("role") == "admin" and not payload.is_active and _active_admins(db) <= 1:
        raise HTTPException(400, "Cannot deactivate the last admin user")
    user = db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"is_active": payload.is_active, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    state = "activated" if payload.is_active else "deactivated"
    logger.info("user_status_changed", target_user_id=user_id, is_active=payload.is_active,
                admin_id=str(admin["_id"]))
    return {"success": True, "message": f"User {state} successfully", "user": public_user(user)}


@router.put("/users/{user_id}/role")
def set_user_role(user_id: str, payload: UserRole, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    if user_id == str(admin["_id"]):
        raise HTTPException(400, "Cannot change your own role")
    user = _load_user(db, user_id)
    if user.get("role") == "admin" and payload.role == "user" and _active_admins(db) <= 1:
        raise HTTPException(400, "Cannot demote the last admin user")
    user = db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"role": payload.role, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("user_role_changed", target_user_id=user_id, new_role=payload.role, admin_id=str(admin["_id"]))
    return {"success": True, "message": f"User role updated to {payload.role} successfully",
            "user": public_user(user)}


@router.put("/users/{user_id}")
def update_user(user_id: str, payload: UserDetails, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    user = _load_user(db, user_id)
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        if changes["email"] != user.get("email") and db["user"].find_one(
            {"email": changes["email"], "_id": {"$ne": user["_id"]}}
        ):
            raise HTTPException(400, "Email already exists")
    changes["updated_at"] = utcnow()
    user = db["user"].find_one_and_update(
        {"_id": user["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    logger.info("user_updated", target_user_id=user_id, fields=sorted(changes), admin_id=str(admin["_id"]))
    return {"success": True, "message": "User updated successfully", "user": public_user(user)}


# Orders

@router.get("/orders")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    sort: str = "created_at",
    order: Literal["asc", "desc"] = "desc",
    admin: dict = Depends(get_current_admin),
    db=Depends(get_db),
):
    query = {}
    if search:
        query["$or"] = [
            {"order_number": contains(search)},
            {"shipping_address.email": contains(search)},
            {"guest_email": contains(search)},
        ]
    if status:
        query["status"] = status
    if date_from or date_to:
        query["created_at"] = {}
        if date_from:
            query["created_at"]["$gte"] = date_from
        if date_to:
            query["created_at"]["$lte"] = date_to
    sort_field = sort if sort in ORDER_SORT_FIELDS else "created_at"
    total = db["order"].count_documents(query)
    cursor = paginate(db["order"].find(query).sort(sort_field, -1 if order == "desc" else 1), page, limit)
    orders = [serialize_doc(o) for o in cursor]
    return {"success": True, "orders": orders, "pagination": pagination_meta(page, limit, total)}


@router.put("/orders/{order_id}/details")
def update_order_details(
    order_id: str, payload: OrderDetails, admin: dict = Depends(get_current_admin), db=Depends(get_db)
):
    order = load_order(db, order_id)
    if payload.shipping_address is not None:
        order = update_shipping_address(db, order, payload.shipping_address)
    changes = {}
    if payload.is_paid is not None:
        changes["is_paid"] = payload.is_paid
        changes["paid_at"] = utcnow() if payload.is_paid else None
    if payload.notes:
        changes["admin_notes"] = payload.notes
    if changes:
        changes["updated_at"] = utcnow()
        order = db["order"].find_one_and_update(
            {"_id": order["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
    logger.info(
        "order_details_updated",
        order_number=order["order_number"],
        address_changed=payload.shipping_address is not None,
        is_paid=payload.is_paid,
        admin_id=str(admin["_id"]),
    )
    return {"success": True, "message": "Order details updated successfully", "order": serialize_doc(order)}


# Reports

def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/reports/monthly")
def report_monthly(
    year: Optional[int] = Query(None, ge=2000, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    admin: dict = Depends(get_current_admin),
    db=Depends(get_db),
):
    this_year, this_month = _current_year_month()
    report = monthly_report(db, year or this_year, month or this_month)
    logger.info("monthly_report_generated", **report["period"])
    return {"success": True, "report": report}


@router.get("/reports/yearly")
def report_yearly(
    year: Optional[int] = Query(None, ge=2000, le=9999),
    admin: dict = Depends(get_current_admin),
    db=Depends(get_db),
):
    report = yearly_report(db, year or _current_year_month()[0])
    logger.info("yearly_report_generated", year=report["year"])
    return {"success": True, "report": report}


@router.get("/reports/export/monthly")
def export_monthly(
    year: Optional[int] = Query(None, ge=2000, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    admin: dict = Depends(get_current_admin),
    db=Depends(get_db),
):
    this_year, this_month = _current_year_month()
    year, month = year or this_year, month or this_month
    logger.info("monthly_report_exported", year=year, month=month)
    return _csv_response(monthly_export(db, year, month), f"monthly-report-{year}-{month}.csv")


@router.get("/reports/export/yearly")
def export_yearly(
    year: Optional[int] = Query(None, ge=2000, le=9999),
    admin: dict = Depends(get_current_admin),
    db=Depends(get_db),
):
    year = year or _current_year_month()[0]
    logger.info("yearly_report_exported", year=year)
    return _csv_response(yearly_export(db, year), f"yearly-report-{year}.csv")
