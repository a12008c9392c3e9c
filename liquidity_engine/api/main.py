"""
FastAPI application entry point.
"""
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from liquidity_engine.api.routes import health, pools
from liquidity_engine.utils.logging import setup_logging
from liquidity_engine.utils.metrics import registry

setup_logging()

app = FastAPI(
    title="Liquidity Engine API",
    description="Liquidity pool allocation and partial-liquidation accounting",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(pools.router, prefix="/pools", tags=["Pools"])

@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "Liquidity Engine API",
        "version": "1.0.0",
        "docs": "/docs"
    }

@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
