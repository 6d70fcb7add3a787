import re
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from pymongo import ReturnDocument

from auth import get_current_admin
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
from errors import CategoryInUseError, NotFoundError
from schemas import Category as CategorySchema, CategoryUpdate

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/categories", tags=["categories"])


class CategoryStatus(BaseModel):
    is_active: bool


class CategoryOrder(BaseModel):
    ids: List[str]


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _name_taken(db, name: str, exclude_id=None) -> bool:
    query = {"name": {"$regex": f"^{re.escape(name)}$", "$options": "i"}}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return db["category"].find_one(query, {"_id": 1}) is not None


def _with_count(db, category: dict, active_only: bool = False) -> dict:
    query = {"category": str(category["_id"])}
    if active_only:
        query["status"] = "active"
    out = serialize_doc(category)
    out["product_count"] = db["product"].count_documents(query)
    return out


def _load_category(db, category_id: str) -> dict:
    category = db["category"].find_one({"_id": to_object_id(category_id)})
    if not category:
        raise NotFoundError("Category not found")
    return category


def delete_category(db, category_id: str) -> dict:
    """Remove a category nobody references. Products are never touched."""
    category = _load_category(db, category_id)
    product_count = db["product"].count_documents({"category": str(category["_id"])})
    if product_count > 0:
        logger.warning("category_delete_blocked", category_id=category_id, product_count=product_count)
        raise CategoryInUseError(product_count)
    db["category"].delete_one({"_id": category["_id"]})
    logger.info("category_deleted", category_id=category_id, name=category.get("name"))
    return category


@router.get("")
def list_categories(db=Depends(get_db)):
    cursor = db["category"].find({"is_active": True}).sort([("sort_order", 1), ("name", 1)])
    categories = [_with_count(db, c, active_only=True) for c in cursor]
    return {"success": True, "categories": categories}


@router.get("/all")
def list_all_categories(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    admin: dict = Depends(get_current_admin),
    db=Depends(get_db),
):
    query = {}
    if is_active is not None:
        query["is_active"] = is_active
    if search:
        query["$or"] = [
            {"name": contains(search)},
            {"description": contains(search)},
        ]
    total = db["category"].count_documents(query)
    cursor = paginate(db["category"].find(query).sort([("sort_order", 1), ("name", 1)]), page, limit)
    categories = [_with_count(db, c) for c in cursor]
    return {"success": True, "categories": categories, "pagination": pagination_meta(page, limit, total)}


@router.put("/reorder")
def reorder_categories(payload: CategoryOrder, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    if not payload.ids:
        raise HTTPException(400, "Invalid categories data")
    for index, category_id in enumerate(payload.ids):
        db["category"].update_one({"_id": to_object_id(category_id)}, {"$set": {"sort_order": index}})
    logger.info("categories_reordered", count=len(payload.ids))
    return {"success": True, "message": "Categories reordered successfully"}


@router.get("/{category_id}")
def get_category(category_id: str, db=Depends(get_db)):
    return {"success": True, "category": _with_count(db, _load_category(db, category_id))}


@router.post("", status_code=201)
def create_category(payload: CategorySchema, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    name = payload.name.strip()
    if _name_taken(db, name):
        raise HTTPException(400, "Category with this name already exists")
    data = payload.model_dump()
    data.update({"name": name, "slug": slugify(name)})
    category_id = create_document(db, "category", data)
    logger.info("category_created", category_id=category_id, name=name)
    category = db["category"].find_one({"_id": to_object_id(category_id)})
    return {"success": True, "message": "Category created successfully", "category": serialize_doc(category)}


@router.put("/{category_id}")
def update_category(
    category_id: str, payload: CategoryUpdate, admin: dict = Depends(get_current_admin), db=Depends(get_db)
):
    category = _load_category(db, category_id)
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if changes["name"].lower() != category["name"].lower() and _name_taken(db, changes["name"], category["_id"]):
            raise HTTPException(400, "Category with this name already exists")
        changes["slug"] = slugify(changes["name"])
    changes["updated_at"] = utcnow()
    updated = db["category"].find_one_and_update(
        {"_id": category["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    logger.info("category_updated", category_id=category_id, fields=sorted(changes))
    return {"success": True, "message": "Category updated successfully", "category": serialize_doc(updated)}


@router.put("/{category_id}/status")
def set_category_status(
    category_id: str, payload: CategoryStatus, admin: dict = Depends(get_current_admin), db=Depends(get_db)
):
    category = db["category"].find_one_and_update(
        {"_id": to_object_id(category_id)},
        {"$set": {"is_active": payload.is_active, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not category:
        raise NotFoundError("Category not found")
    state = "activated" if payload.is_active else "deactivated"
    logger.info("category_status_changed", category_id=category_id, is_active=payload.is_active)
    return {"success": True, "message": f"Category {state} successfully", "category": serialize_doc(category)}


@router.delete("/{category_id}")
def remove_category(category_id: str, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    delete_category(db, category_id)
    return {"success": True, "message": "Category deleted successfully"}
