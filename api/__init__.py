"""REST API module for the marketplace.

This module provides HTTP endpoints for:
- Browsing and managing listings
- Proposing, paying and settling purchase requests
- Quoting fiat prices in the native token
- Batch ownership transfers
- Ownership lookup and history
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .errors import register_error_handlers

logger = logging.getLogger(__name__)

# Lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    logger.info("Initializing API...")
    # Database setup and teardown are handled in __main__.py
    yield
    logger.info("Shutting down API...")

app = FastAPI(
    title="Provenance Marketplace API",
    description="REST API for the product provenance marketplace",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

@app.get("/")
async def root():
    """Service name and version."""
    return {'name': app.title, 'version': app.version}

from .listings import router as listings_router
from .purchases import router as purchases_router
from .payments import router as payments_router
from .transfers import router as transfers_router
from .ownership import router as ownership_router

app.include_router(listings_router)
app.include_router(purchases_router)
app.include_router(payments_router)
app.include_router(transfers_router)
app.include_router(ownership_router)
