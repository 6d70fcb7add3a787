from datetime import timedelta
from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, EmailStr

from auth import get_current_admin
from database import contains, create_document, get_db, paginate, pagination_meta, serialize_doc, utcnow
from errors import NotFoundError
from schemas import Newsletter as NewsletterSchema

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/newsletter", tags=["newsletter"])

DEFAULT_PREFERENCES = {"weekly_updates": True, "sale_alerts": True, "new_arrivals": True}


class Unsubscribe(BaseModel):
    email: EmailStr


def subscribe(db, email: str, source: str) -> tuple:
    """Returns (subscriber, created). Inactive subscribers are reactivated in place."""
    email = email.lower()
    existing = db["newsletter"].find_one({"email": email})
    if existing:
        if existing.get("is_active"):
            raise HTTPException(400, "This email is already subscribed to our newsletter")
        db["newsletter"].update_one(
            {"_id": existing["_id"]},
            {"$set": {
                "is_active": True,
                "subscribed_at": utcnow(),
                "unsubscribed_at": None,
                "source": source,
                "updated_at": utcnow(),
            }},
        )
        logger.info("newsletter_resubscribed", email=email, source=source)
        return db["newsletter"].find_one({"_id": existing["_id"]}), False

    subscriber_id = create_document(db, "newsletter", {
        "email": email,
        "is_active": True,
        "subscribed_at": utcnow(),
        "unsubscribed_at": None,
        "source": source,
        "preferences": dict(DEFAULT_PREFERENCES),
    })
    logger.info("newsletter_subscribed", email=email, source=source, subscriber_id=subscriber_id)
    return db["newsletter"].find_one({"email": email}), True


def unsubscribe(db, email: str) -> dict:
    email = email.lower()
    subscriber = db["newsletter"].find_one({"email": email})
    if not subscriber:
        raise NotFoundError("Email address not found in our newsletter list")
    if not subscriber.get("is_active"):
        raise HTTPException(400, "This email is already unsubscribed")
    now = utcnow()
    db["newsletter"].update_one(
        {"_id": subscriber["_id"]}, {"$set": {"is_active": False, "unsubscribed_at": now, "updated_at": now}}
    )
    logger.info("newsletter_unsubscribed", email=email)
    return subscriber


@router.post("/subscribe")
def subscribe_route(payload: NewsletterSchema, response: Response, db=Depends(get_db)):
    subscriber, created = subscribe(db, payload.email, payload.source)
    if created:
        response.status_code = 201
        return {"success": True, "message": "Thank you for subscribing to our newsletter!",
                "subscriber": serialize_doc(subscriber)}
    return {"success": True, "message": "Welcome back! You have been resubscribed to our newsletter",
            "subscriber": serialize_doc(subscriber)}


@router.post("/unsubscribe")
def unsubscribe_route(payload: Unsubscribe, db=Depends(get_db)):
    unsubscribe(db, payload.email)
    return {"success": True, "message": "You have been unsubscribed from our newsletter"}


@router.get("/subscribers")
def list_subscribers(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status: Literal["active", "inactive", "all"] = "active",
    search: Optional[str] = None,
    admin: dict = Depends(get_current_admin),
    db=Depends(get_db),
):
    query = {}
    if status == "active":
        query["is_active"] = True
    elif status == "inactive":
        query["is_active"] = False
    if search:
        query["email"] = contains(search)
    total = db["newsletter"].count_documents(query)
    cursor = paginate(db["newsletter"].find(query).sort("subscribed_at", -1), page, limit)
    subscribers = [serialize_doc(s) for s in cursor]
    return {"success": True, "subscribers": subscribers, "pagination": pagination_meta(page, limit, total)}


@router.get("/stats")
def newsletter_stats(admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    since = utcnow() - timedelta(days=30)
    source_stats = list(db["newsletter"].aggregate([
        {"$group": {"_id": "$source", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
    ]))
    stats = {
        "total_subscribers": db["newsletter"].count_documents({"is_active": True}),
        "total_unsubscribed": db["newsletter"].count_documents({"is_active": False}),
        "recent_subscriptions": db["newsletter"].count_documents(
            {"is_active": True, "subscribed_at": {"$gte": since}}
        ),
        "source_stats": [{"source": s["_id"], "count": s["count"]} for s in source_stats],
    }
    return {"success": True, "stats": stats}
