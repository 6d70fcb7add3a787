from typing import Iterable, List, Literal, Optional, Tuple

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from pymongo import ReturnDocument

from auth import get_current_admin, get_current_user, get_optional_user, is_admin
from database import (
    contains,
    create_document,
    get_db,
    paginate,
    pagination_meta,
    serialize_doc,
    to_object_id,
    utcnow,
)
from errors import ConcurrentUpdateError, NotFoundError
from schemas import Product as ProductSchema, ProductUpdate, Review as ReviewSchema, Variant

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])

SORT_OPTIONS = {
    "price": "price",
    "name": "name",
    "category": "category",
    "createdAt": "created_at",
    "newest": "created_at",
}

NULLABLE_PRODUCT_FIELDS = {
    "original_price", "discount_price", "sale_price", "subcategory", "brand",
    "fabric", "care_instructions", "measurements", "seo_title", "seo_description",
}


class BulkAction(BaseModel):
    action: Literal["activate", "deactivate", "delete"]
    product_ids: List[str]


# Stock and rating bookkeeping

def recalculate_total_stock(variants: Iterable) -> int:
    total = 0
    for v in variants or []:
        total += (v.get("stock") if isinstance(v, dict) else v.stock) or 0
    return total


def recalculate_rating(reviews: List[dict]) -> Tuple[float, int]:
    if not reviews:
        return 0.0, 0
    avg = sum(r.get("rating", 0) for r in reviews) / len(reviews)
    return round(avg, 2), len(reviews)


def effective_price(product: dict) -> float:
    """Price a shopper pays right now: sale price, then discount price, then list price."""
    if product.get("on_sale") and product.get("sale_price"):
        return float(product["sale_price"])
    if product.get("discount_price"):
        return float(product["discount_price"])
    return float(product["price"])


def find_variant(product: dict, size: str, color: str) -> Optional[dict]:
    for v in product.get("variants", []):
        if v.get("size") == size and v.get("color") == color:
            return v
    return None


def reserve_variant_stock(db, product_id: ObjectId, size: str, color: str, quantity: int) -> bool:
    """Atomically take `quantity` units of one variant; False when not enough is left."""
    result = db["product"].update_one(
        {
            "_id": product_id,
            "status": "active",
            "variants": {"$elemMatch": {"size": size, "color": color, "stock": {"$gte": quantity}}},
        },
        {"$inc": {"variants.$.stock": -quantity, "total_stock": -quantity}},
    )
    reserved = result.modified_count == 1
    logger.info(
        "stock_reserved" if reserved else "stock_reservation_failed",
        product_id=str(product_id), size=size, color=color, quantity=quantity,
    )
    return reserved


def release_variant_stock(db, product_id: ObjectId, size: str, color: str, quantity: int) -> bool:
    result = db["product"].update_one(
        {"_id": product_id, "variants": {"$elemMatch": {"size": size, "color": color}}},
        {"$inc": {"variants.$.stock": quantity, "total_stock": quantity}},
    )
    released = result.modified_count == 1
    if released:
        logger.info("stock_released", product_id=str(product_id), size=size, color=color, quantity=quantity)
    else:
        # product was permanently deleted or the variant was removed since the sale
        logger.warning("stock_release_skipped", product_id=str(product_id), size=size, color=color)
    return released


# Validation helpers

def _check_category(db, category_id: str) -> None:
    try:
        exists = db["category"].find_one({"_id": to_object_id(category_id)}, {"_id": 1})
    except InvalidId:
        exists = None
    if not exists:
        raise HTTPException(400, "Category not found")


def _check_variants(db, variants: List[Variant], product_id: Optional[ObjectId] = None) -> None:
    """Each (size, color) pair and each SKU may appear once; SKUs are unique across products."""
    pairs = [(v.size, v.color) for v in variants]
    if len(pairs) != len(set(pairs)):
        raise HTTPException(400, "Duplicate size and color combinations found in variants")
    skus = [v.sku for v in variants if v.sku]
    if len(skus) != len(set(skus)):
        raise HTTPException(400, "Duplicate SKUs found in variants")
    if not skus:
        return
    query = {"variants.sku": {"$in": skus}}
    if product_id is not None:
        query["_id"] = {"$ne": product_id}
    clash = db["product"].find_one(query, {"variants.sku": 1})
    if clash:
        taken = sorted({v.get("sku") for v in clash.get("variants", [])} & set(skus))
        raise HTTPException(400, f"Duplicate sku: {', '.join(taken)} already exists")


def _dump_variants(variants: List[Variant]) -> List[dict]:
    # a null sku would collide in the sparse unique index
    return [v.model_dump(exclude_none=True) for v in variants]


def _load_product(db, product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id)})
    if not product:
        raise NotFoundError("Product not found")
    return product


def _price_filter(price_range: str) -> dict:
    try:
        low, high = price_range.split("-", 1)
        if high == "+":
            return {"$gte": float(low)}
        return {"$gte": float(low), "$lte": float(high)}
    except ValueError:
        raise HTTPException(400, "price_range must look like 50-100 or 100-+")


# Routes

@router.get("")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    category: Optional[str] = None,
    search: Optional[str] = None,
    sort: str = "newest",
    order: Literal["asc", "desc"] = "desc",
    price_range: Optional[str] = None,
    size: Optional[str] = None,
    color: Optional[str] = None,
    in_stock: bool = False,
    featured: bool = False,
    status: Literal["active", "archived", "all"] = "active",
    current: Optional[dict] = Depends(get_optional_user),
    db=Depends(get_db),
):
    query = {}
    # only admins see past the active catalog
    if status != "active" and is_admin(current):
        if status == "archived":
            query["status"] = "archived"
    else:
        query["status"] = "active"

    if category == "sale":
        query["$or"] = [
            {"discount_price": {"$gt": 0}},
            {"sale_price": {"$gt": 0}},
            {"on_sale": True},
        ]
    elif category:
        query["category"] = category
    if featured:
        query["featured"] = True
    if in_stock:
        query["total_stock"] = {"$gt": 0}
    if search:
        search_or = [
            {"name": contains(search)},
            {"description": contains(search)},
            {"subcategory": contains(search)},
            {"tags": contains(search)},
            {"brand": contains(search)},
        ]
        if "$or" in query:
            query["$and"] = [{"$or": query.pop("$or")}, {"$or": search_or}]
        else:
            query["$or"] = search_or
    if price_range:
        query["price"] = _price_filter(price_range)
    if size or color:
        elem = {}
        if size:
            elem["size"] = size
        if color:
            elem["color"] = color
        query["variants"] = {"$elemMatch": elem}

    direction = 1 if order == "asc" else -1
    if sort == "price-low":
        sort_spec = [("price", 1)]
    elif sort == "price-high":
        sort_spec = [("price", -1)]
    elif sort == "rating":
        sort_spec = [("rating", -1)]
    elif sort == "popular":
        sort_spec = [("num_reviews", -1)]
    else:
        sort_spec = [(SORT_OPTIONS.get(sort, "created_at"), direction)]

    total = db["product"].count_documents(query)
    cursor = paginate(db["product"].find(query, {"reviews": 0}).sort(sort_spec), page, limit)
    products = [serialize_doc(d) for d in cursor]
    logger.info("products_listed", found=len(products), total=total, search=search or "none")
    return {"success": True, "products": products, "pagination": pagination_meta(page, limit, total)}


@router.post("/bulk-action")
def bulk_action(payload: BulkAction, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    if not payload.product_ids:
        raise HTTPException(400, "Invalid action or product IDs")
    new_status = "active" if payload.action == "activate" else "archived"
    ids = [to_object_id(pid) for pid in payload.product_ids]
    result = db["product"].update_many(
        {"_id": {"$in": ids}}, {"$set": {"status": new_status, "updated_at": utcnow()}}
    )
    logger.info("products_bulk_updated", action=payload.action, modified=result.modified_count,
                admin_id=str(admin["_id"]))
    messages = {
        "activate": "Products activated successfully",
        "deactivate": "Products deactivated successfully",
        "delete": "Products deleted successfully",
    }
    return {"success": True, "message": messages[payload.action], "modified_count": result.modified_count}


@router.get("/{product_id}")
def get_product(product_id: str, current: Optional[dict] = Depends(get_optional_user), db=Depends(get_db)):
    product = _load_product(db, product_id)
    if product.get("status") != "active" and not is_admin(current):
        raise NotFoundError("Product not found")
    return {"success": True, "product": serialize_doc(product)}


@router.post("", status_code=201)
def create_product(payload: ProductSchema, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    _check_category(db, payload.category)
    _check_variants(db, payload.variants)
    data = payload.model_dump(exclude={"variants"})
    data["variants"] = _dump_variants(payload.variants)
    data["total_stock"] = recalculate_total_stock(data["variants"])
    data.update({"reviews": [], "rating": 0.0, "num_reviews": 0, "status": "active"})
    product_id = create_document(db, "product", data)
    product = db["product"].find_one({"_id": ObjectId(product_id)})
    logger.info("product_created", product_id=product_id, name=payload.name, total_stock=data["total_stock"])
    return {"success": True, "message": "Product created successfully", "product": serialize_doc(product)}


@router.put("/{product_id}")
def update_product(
    product_id: str, payload: ProductUpdate, admin: dict = Depends(get_current_admin), db=Depends(get_db)
):
    oid = to_object_id(product_id)
    changes = {
        k: v for k, v in payload.model_dump(exclude_unset=True).items()
        if v is not None or k in NULLABLE_PRODUCT_FIELDS
    }
    if "category" in changes:
        _check_category(db, payload.category)
    if payload.variants is not None:
        _check_variants(db, payload.variants, product_id=oid)
        changes["variants"] = _dump_variants(payload.variants)
        changes["total_stock"] = recalculate_total_stock(changes["variants"])
    changes["updated_at"] = utcnow()
    product = db["product"].find_one_and_update(
        {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if not product:
        raise NotFoundError("Product not found")
    logger.info("product_updated", product_id=product_id, fields=sorted(changes))
    return {"success": True, "message": "Product updated successfully", "product": serialize_doc(product)}


def _set_status(db, product_id: str, status: str) -> dict:
    product = db["product"].find_one_and_update(
        {"_id": to_object_id(product_id)},
        {"$set": {"status": status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not product:
        raise NotFoundError("Product not found")
    return product


@router.delete("/{product_id}")
def archive_product(product_id: str, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    product = _set_status(db, product_id, "archived")
    logger.info("product_archived", product_id=product_id, name=product.get("name"))
    return {"success": True, "message": "Product deleted successfully", "status": "archived"}


@router.put("/{product_id}/restore")
def restore_product(product_id: str, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    product = _set_status(db, product_id, "active")
    logger.info("product_restored", product_id=product_id, name=product.get("name"))
    return {"success": True, "message": "Product restored successfully", "product": serialize_doc(product)}


@router.delete("/{product_id}/permanent")
def delete_product_permanently(product_id: str, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    product = db["product"].find_one_and_delete({"_id": to_object_id(product_id)})
    if not product:
        raise NotFoundError("Product not found")
    logger.info("product_deleted", product_id=product_id, name=product.get("name"), admin_id=str(admin["_id"]))
    return {"success": True, "message": "Product permanently deleted", "status": "deleted"}


@router.post("/{product_id}/reviews", status_code=201)
def add_review(
    product_id: str, review: ReviewSchema, current: dict = Depends(get_current_user), db=Depends(get_db)
):
    product = _load_product(db, product_id)
    if product.get("status") != "active":
        raise NotFoundError("Product not found")
    reviews = product.get("reviews", [])
    user_id = str(current["_id"])
    if any(r.get("user") == user_id for r in reviews):
        raise HTTPException(400, "Product already reviewed")
    entry = {
        "id": str(ObjectId()),
        "user": user_id,
        "name": current.get("name"),
        "rating": review.rating,
        "comment": review.comment,
        "created_at": utcnow(),
    }
    rating, count = recalculate_rating(reviews + [entry])
    result = db["product"].update_one(
        {"_id": product["_id"], "num_reviews": product.get("num_reviews", 0)},
        {"$push": {"reviews": entry}, "$set": {"rating": rating, "num_reviews": count}},
    )
    if result.modified_count != 1:
        raise ConcurrentUpdateError("Product reviews changed, please retry")
    logger.info("review_added", product_id=product_id, user_id=user_id, rating=review.rating)
    return {"success": True, "message": "Review added", "review": serialize_doc(entry),
            "rating": rating, "num_reviews": count}


@router.delete("/{product_id}/reviews/{review_id}")
def delete_review(
    product_id: str, review_id: str, current: dict = Depends(get_current_user), db=Depends(get_db)
):
    product = _load_product(db, product_id)
    reviews = product.get("reviews", [])
    target = next((r for r in reviews if r.get("id") == review_id), None)
    if not target:
        raise NotFoundError("Review not found")
    if target.get("user") != str(current["_id"]) and not is_admin(current):
        raise HTTPException(403, "Not authorized to delete this review")
    rating, count = recalculate_rating([r for r in reviews if r.get("id") != review_id])
    result = db["product"].update_one(
        {"_id": product["_id"], "num_reviews": product.get("num_reviews", 0)},
        {"$pull": {"reviews": {"id": review_id}}, "$set": {"rating": rating, "num_reviews": count}},
    )
    if result.modified_count != 1:
        raise ConcurrentUpdateError("Product reviews changed, please retry")
    logger.info("review_deleted", product_id=product_id, review_id=review_id)
    return {"success": True, "message": "Review deleted", "rating": rating, "num_reviews": count}
