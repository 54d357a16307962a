# utils.py
import json
import logging
import os

import config

import firebase_admin
from firebase_admin import credentials, firestore

logger = logging.getLogger(__name__)

# Global Firestore DB instance
_firestore_db = None


def initialize_firestore():
    """
    Initializes Firebase Admin SDK and Firestore client.
    This should be called once at application startup.
    """
    global _firestore_db

    if config.TESTING_MODE:
        print("🧪 TESTING MODE: Firestore initialization skipped")
        _firestore_db = None
        return

    try:
        # Check if Firebase Admin SDK is already initialized
        if not firebase_admin._apps:
            service_account_key_path = config.FIRESTORE_SERVICE_ACCOUNT_KEY_PATH

            if not os.path.exists(service_account_key_path):
                print(f"❌ Firebase service account key file not found at: {service_account_key_path}")
                print("🔧 Firestore disabled - conversation migrations are unavailable.")
                _firestore_db = None
                return

            cred = credentials.Certificate(service_account_key_path)

            with open(service_account_key_path, 'r') as f:
                service_account = json.load(f)

            options = {}
            if service_account.get('project_id'):
                options['projectId'] = service_account['project_id']

            firebase_admin.initialize_app(cred, options)
            print("✅ Firebase Admin SDK initialized successfully!")

        _firestore_db = firestore.client()
        print("✅ Firestore client initialized successfully!")

    except (ValueError, OSError) as e:
        print(f"❌ ERROR initializing Firestore: {e}")
        print("🔧 Firestore disabled - conversation migrations are unavailable.")
        logger.exception("Firestore initialization failed")
        _firestore_db = None


def get_firestore_db():
    """Returns the initialized Firestore client instance."""
    if _firestore_db is None:
        initialize_firestore()  # Attempt to initialize if not already
    return _firestore_db
