# config.py
import os

# --- Firebase Firestore Configuration ---
# Path to your Firebase service account key JSON file.
# This file is downloaded from Firebase Console -> Project settings -> Service accounts.
FIRESTORE_SERVICE_ACCOUNT_KEY_PATH = os.getenv("FIRESTORE_SERVICE_ACCOUNT_KEY_PATH", "data/firebase_data.json")

# Firestore Collection Names
FIRESTORE_CONVERSATIONS_COLLECTION = os.getenv("FIRESTORE_CONVERSATIONS_COLLECTION", "crm_conversations")
FIRESTORE_MIGRATION_LOCKS_COLLECTION = os.getenv("FIRESTORE_MIGRATION_LOCKS_COLLECTION", "crm_migration_locks")
MIGRATION_LOCK_DOCUMENT_ID = "conversation-merge"

# Testing Mode Flag
TESTING_MODE = os.getenv("TESTING_MODE", "false").lower() == "true"  # When True, Firestore is never initialized

# --- Phone Identity ---
# Default country code when a local number has no country code (Turkey)
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "90")
NATIONAL_NUMBER_LENGTH = int(os.getenv("NATIONAL_NUMBER_LENGTH", "10"))  # Turkish numbers without country code
MIN_SIGNIFICANT_DIGITS = 10
MAX_E164_DIGITS = 15

# --- Conversation Migration ---
MIGRATION_DEFAULT_LIMIT = int(os.getenv("MIGRATION_DEFAULT_LIMIT", "1000"))
MIGRATION_MAX_LIMIT = int(os.getenv("MIGRATION_MAX_LIMIT", "10000"))
MIGRATION_PAGE_SIZE = int(os.getenv("MIGRATION_PAGE_SIZE", "300"))  # Documents per Firestore page
MIGRATION_LOCK_TTL_SECONDS = int(os.getenv("MIGRATION_LOCK_TTL_SECONDS", "600"))  # Stale lock expiry
MIGRATION_COMMIT_RETRIES = int(os.getenv("MIGRATION_COMMIT_RETRIES", "2"))  # Extra attempts per batch
MIGRATION_STATS_TOP_GROUPS = 10

# Firestore batches hold at most 500 writes; one is the primary update
MAX_GROUP_SIZE = 500

# --- Server ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8003"))
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ALLOWED_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000",
    ).split(",")
    if origin.strip()
]
