"""
Sample data for a fresh store.

    python seed.py                      # categories and products, when empty
    python seed.py --admin admin@example.com --password secret123
"""
import argparse

import structlog

from auth import get_password_hash
from catalog import recalculate_total_stock
from categories import slugify
from config import get_settings
from database import create_document, db as default_db, ensure_indexes, utcnow
from logging_config import configure_logging

logger = structlog.get_logger(__name__)

SAMPLE_CATEGORIES = [
    {"name": "T-Shirts", "description": "Everyday tees", "sort_order": 0},
    {"name": "Hoodies", "description": "Warm layers", "sort_order": 1},
    {"name": "Accessories", "description": "Caps, bags and more", "sort_order": 2},
]

SAMPLE_PRODUCTS = [
    {
        "name": "Classic Crew Tee",
        "description": "Soft cotton tee with a relaxed fit.",
        "price": 25.0,
        "category": "T-Shirts",
        "brand": "Basics",
        "tags": ["cotton", "tee"],
        "featured": True,
        "images": [{"url": "/uploads/classic-tee.jpg", "alt": "Classic Crew Tee"}],
        "variants": [
            {"size": "S", "color": "White", "color_code": "#FFFFFF", "stock": 20, "sku": "CCT-S-WHT"},
            {"size": "M", "color": "White", "color_code": "#FFFFFF", "stock": 25, "sku": "CCT-M-WHT"},
            {"size": "M", "color": "Black", "color_code": "#000000", "stock": 15, "sku": "CCT-M-BLK"},
        ],
    },
    {
        "name": "Fleece Pullover Hoodie",
        "description": "Brushed fleece hoodie with kangaroo pocket.",
        "price": 60.0,
        "sale_price": 48.0,
        "on_sale": True,
        "category": "Hoodies",
        "brand": "Basics",
        "tags": ["fleece", "hoodie"],
        "images": [{"url": "/uploads/fleece-hoodie.jpg", "alt": "Fleece Pullover Hoodie"}],
        "variants": [
            {"size": "M", "color": "Grey", "color_code": "#808080", "stock": 10, "sku": "FPH-M-GRY"},
            {"size": "L", "color": "Grey", "color_code": "#808080", "stock": 8, "sku": "FPH-L-GRY"},
        ],
    },
    {
        "name": "Canvas Tote",
        "description": "Heavy canvas tote bag.",
        "price": 18.0,
        "category": "Accessories",
        "tags": ["bag", "canvas"],
        "images": [{"url": "/uploads/canvas-tote.jpg", "alt": "Canvas Tote"}],
        "variants": [
            {"size": "One Size", "color": "Natural", "color_code": "#F5F5DC", "stock": 40, "sku": "CT-OS-NAT"},
        ],
    },
]


def seed_catalog(database) -> dict:
    """Insert sample categories and products into empty collections."""
    created = {"categories": 0, "products": 0}
    if database["category"].count_documents({}) == 0:
        for category in SAMPLE_CATEGORIES:
            create_document(database, "category", {
                **category, "slug": slugify(category["name"]), "image": None, "is_active": True,
            })
            created["categories"] += 1

    if database["product"].count_documents({}) == 0:
        category_ids = {c["name"]: str(c["_id"]) for c in database["category"].find({}, {"name": 1})}
        for product in SAMPLE_PRODUCTS:
            category_id = category_ids.get(product["category"])
            if category_id is None:
                logger.warning("seed_category_missing", category=product["category"], product=product["name"])
                continue
            data = {
                "original_price": None,
                "discount_price": None,
                "sale_price": None,
                "on_sale": False,
                "brand": None,
                "featured": False,
                **product,
                "category": category_id,
                "total_stock": recalculate_total_stock(product["variants"]),
                "reviews": [],
                "rating": 0.0,
                "num_reviews": 0,
                "status": "active",
            }
            create_document(database, "product", data)
            created["products"] += 1

    logger.info("catalog_seeded", **created)
    return created


def create_admin(database, email: str, password: str, name: str = "Store Admin") -> str:
    """Create the admin account, or promote and reactivate an existing user."""
    email = email.lower()
    existing = database["user"].find_one({"email": email})
    if existing:
        database["user"].update_one(
            {"_id": existing["_id"]},
            {"$set": {"role": "admin", "is_active": True, "updated_at": utcnow()}},
        )
        logger.info("admin_promoted", user_id=str(existing["_id"]), email=email)
        return str(existing["_id"])
    user_id = create_document(database, "user", {
        "name": name,
        "email": email,
        "password_hash": get_password_hash(password),
        "role": "admin",
        "is_active": True,
        "last_login": None,
    })
    logger.info("admin_created", user_id=user_id, email=email)
    return user_id


def main(argv=None):
    parser = argparse.ArgumentParser(description="Seed the store database with sample data")
    parser.add_argument("--admin", metavar="EMAIL", help="create or promote an admin account")
    parser.add_argument("--password", help="password for a newly created admin")
    parser.add_argument("--name", default="Store Admin")
    parser.add_argument("--skip-catalog", action="store_true")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    if default_db is None:
        parser.error("DATABASE_URL and DATABASE_NAME must be set")
    if args.admin and not args.password and not default_db["user"].find_one({"email": args.admin.lower()}):
        parser.error("--password is required when creating a new admin")

    ensure_indexes(default_db)
    if not args.skip_catalog:
        seed_catalog(default_db)
    if args.admin:
        create_admin(default_db, args.admin, args.password, args.name)


if __name__ == "__main__":
    main()
