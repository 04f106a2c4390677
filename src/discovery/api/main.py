from __future__ import annotations

from datetime import UTC, datetime

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..config import load_settings
from ..observability.metrics import metrics_middleware_factory
from .routers.interactions import router as interactions_router
from .routers.telegram import router as telegram_router
from .routers.tree import router as tree_router

load_dotenv()  # Load environment variables from .env if present (tokens, provider keys, store selection)

app = FastAPI(title="Infinite Discovery API", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers
app.include_router(interactions_router)
app.include_router(tree_router)
app.include_router(telegram_router)


@app.get("/")
def root():
    return {"name": "Infinite Discovery API", "version": "0.1.0"}


@app.get("/ping")
def ping():
    return {"message": "pong"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": load_settings().store_impl,
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
