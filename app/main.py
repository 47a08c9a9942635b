"""
Raw Feeding Ratio Calculator API - Main Application

Backend for a raw feeding calculator: keeps the meat : bone : organ ratio
the user wants and tells them how much of each component to add or
remove to reach it.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.database import Base, engine
from app.core.logging import configure_logging
from app.api import calculator, recipes
from app.services.ratio_engine import RatioResolutionEngine

configure_logging()

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    ## Raw Feeding Ratio Calculator API

    Keep a batch of raw food on its meat : bone : organ ratio.

    ### Features
    - Presets 80:10:10 (adult) and 75:15:10 (kitten / nursing)
    - Custom ratios, remembered per recipe and globally
    - Correctors: how much meat, bone or organ to add or remove,
      using each component in turn as the fixed reference

    ### Core Endpoints
    - `/calculator` - Resolve the active ratio and get correctors
    - `/recipe` - Manage recipes and the selected recipe
    """,
    version="1.0.0",
)

# One calculator session per application
app.state.ratio_engine = RatioResolutionEngine()

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(calculator.router)
app.include_router(recipes.router)


@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": "1.0.0",
        "docs": "/docs",
        "endpoints": {
            "calculator": "/calculator",
            "recipes": "/recipe",
        }
    }


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
