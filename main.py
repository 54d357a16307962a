# -*- coding: utf-8 -*-
"""
Main entry point for the CRM conversation migration service.
Loads the FastAPI app and starts the server.
"""

from modules.core import app
from utils.utils import initialize_firestore
import config

if __name__ == "__main__":
    try:
        initialize_firestore()
        print(f"🔀 Conversation migration API ready on port {config.PORT}")
    except Exception as e:
        print(f"❌ Startup error: {e}")
        import traceback
        traceback.print_exc()
        raise

    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
