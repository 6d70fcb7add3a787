import os
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

import admin
import auth
import catalog
import categories
import newsletter
import orders
from config import get_settings
from database import db, ensure_indexes
from errors import register_exception_handlers, request_context_middleware
from logging_config import configure_logging

logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_json)
    if db is not None:
        ensure_indexes(db)
    logger.info("app_started", env=settings.app_env, database_configured=db is not None)
    yield
    logger.info("app_stopped")


app = FastAPI(title=f"{settings.store_name} API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(request_context_middleware)
register_exception_handlers(app)

for module in (auth, catalog, categories, orders, newsletter, admin):
    app.include_router(module.router)

os.makedirs(settings.upload_dir, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.upload_dir), name="uploads")


@app.get("/")
def read_root():
    return {"message": f"{settings.store_name} backend is running"}


@app.get("/api/health")
def health():
    return {"success": True, "status": "OK", "environment": settings.app_env}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Set" if settings.database_url else "Not Set",
        "database_name": "Set" if settings.database_name else "Not Set",
        "collections": [],
    }
    if db is not None:
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "Connected & Working"
        except Exception as e:
            logger.warning("database_check_failed", error=str(e))
            response["database"] = f"Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
