"""
asgi.py -- Application assembly for infst-web.

This is the ONLY file that imports from both api/ and web/. It joins the JSON
endpoints and the server-rendered pages into a single ASGI app without
coupling the two layers to each other.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from web.routes import router as web_router

app.include_router(web_router, tags=["Web UI"])
