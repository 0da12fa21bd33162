"""
asgi.py -- Application assembly for Gatehouse.

This is the ONLY file that imports from both api/ and web/. It joins the two
independent layers into a single ASGI app without coupling them to each other.
api/main.py knows nothing about web/; the web routers know nothing about api/
beyond the shared rate limiter.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from web.profile import router as profile_router
from web.routes import router as web_router

# Mount the web UI routers here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"])
app.include_router(profile_router, tags=["Web UI"])
