import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

import admin
import auth
import cart
import catalog
import config
import database
import designs
import orders
import payments
from catalog import slugify
from database import create_document, ensure_indexes
from schemas import Product as ProductSchema, ProductImage

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("duha")

DEMO_PRODUCTS = [
    {
        "name": "Classic Crew Tee",
        "description": "Heavyweight cotton crew neck tee with a relaxed fit.",
        "base_price": 24.0,
        "category": "t-shirts",
        "colors": ["white", "black", "navy"],
        "sizes": ["S", "M", "L", "XL"],
        "image": "https://images.unsplash.com/photo-1521572163474-6864f9cf17ab",
        "is_featured": True,
        "featured_rank": 1,
        "is_hero": True,
    },
    {
        "name": "Everyday Hoodie",
        "description": "Brushed fleece pullover hoodie with a kangaroo pocket.",
        "base_price": 48.0,
        "category": "hoodies",
        "colors": ["black", "heather grey"],
        "sizes": ["S", "M", "L", "XL", "XXL"],
        "image": "https://images.unsplash.com/photo-1556821840-3a63f95609a7",
        "is_featured": True,
        "featured_rank": 2,
    },
    {
        "name": "Oversized Graphic Tee",
        "description": "Drop-shoulder tee ready for front and back prints.",
        "base_price": 29.0,
        "category": "t-shirts",
        "colors": ["white", "black"],
        "sizes": ["M", "L", "XL"],
        "image": "https://images.unsplash.com/photo-1503341504253-dff4815485f1",
    },
    {
        "name": "Canvas Tote",
        "description": "Sturdy cotton canvas tote bag for everyday carry.",
        "base_price": 18.0,
        "category": "accessories",
        "colors": ["natural"],
        "sizes": ["One Size"],
        "image": "https://images.unsplash.com/photo-1544816155-12df9643f363",
    },
]


def seed_demo_products() -> int:
    collection = database.get_db()["product"]
    if collection.count_documents({}) > 0:
        return 0
    for item in DEMO_PRODUCTS:
        product = ProductSchema(
            name=item["name"],
            slug=slugify(item["name"]),
            description=item["description"],
            base_price=item["base_price"],
            category=item["category"],
            colors=item["colors"],
            sizes=item["sizes"],
            images=[ProductImage(url=item["image"], alt=item["name"], is_primary=True)],
            is_featured=item.get("is_featured", False),
            featured_rank=item.get("featured_rank"),
            is_hero=item.get("is_hero", False),
        )
        create_document("product", product)
    logger.info("Seeded %d demo products", len(DEMO_PRODUCTS))
    return len(DEMO_PRODUCTS)


def init_database():
    if database.db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; running without a database")
        return
    try:
        ensure_indexes()
        seed_demo_products()
    except Exception:
        logger.exception("Startup database initialisation failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database()
    yield


app = FastAPI(title="Duha Threads API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (auth, catalog, cart, orders, payments, designs, admin):
    app.include_router(module.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %s (%.1fms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# Routes
@app.get("/")
def read_root():
    return {"message": "Duha Threads API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["database_url"] = "✅ Set" if config.DATABASE_URL else "❌ Not Set"
            response["database_name"] = database.db.name
            response["collections"] = database.db.list_collection_names()
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


@app.get("/api/health")
def health():
    if database.db is None:
        return {"status": "ok", "db": "no-uri"}
    try:
        database.db.list_collection_names()
    except Exception as e:
        logger.error("Health check database error: %s", e)
        return {"status": "degraded", "db": "error"}
    return {"status": "ok", "db": "connected"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
