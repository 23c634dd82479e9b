"""
Echo - customer support backend
Widget chat, operator dashboard and knowledge base over FastAPI
"""

import os

import uvicorn

from app.main import app


# =============================================================================
# Main
# =============================================================================

if __name__ == "__main__":
    print("Echo starting...")
    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
    )
