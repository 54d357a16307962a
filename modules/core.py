# -*- coding: utf-8 -*-
"""
Core module: FastAPI app setup and configuration
Creates the application, configures logging and CORS, registers the
conversation migration routes and initializes Firestore on startup.
"""

import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load environment variables from .env file (before config reads them)
load_dotenv()

# Import configuration
import config

# Import Firebase utilities
from utils.utils import initialize_firestore

# Import routes
from routes.conversation_migration_routes import router as conversation_migration_router

logging.basicConfig(
    level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Initialize FastAPI app
app = FastAPI(title="CRM Conversation Migration")

# Configure CORS middleware to allow dashboard access
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods (GET, POST, PUT, DELETE, etc.)
    allow_headers=["*"],  # Allow all headers
)

app.include_router(conversation_migration_router)


@app.on_event("startup")
async def startup_event():
    """Initialize Firestore so the first migration request does not pay for it"""
    print("=" * 60)
    print("🚀 INITIALIZING FIRESTORE")
    print("=" * 60)
    initialize_firestore()


@app.get("/health")
async def health():
    return {"success": True, "status": "ok"}
