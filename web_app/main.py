"""
Bookmarks Web App: multi-user bookmark manager on the hosted identity + data service.
GET /, /login; /auth/login, /auth/callback, /auth/signout; /api/bookmarks. Port 8000.
"""
from fastapi import FastAPI

from web_app.auth_routes import router as auth_router
from web_app.bookmarks import router as bookmarks_router
from web_app.pages import router as pages_router
from web_app.session import SessionRefreshMiddleware

app = FastAPI(title="Bookmarks Web App", version="0.1.0")
# None = real network; tests mount local_backend here with httpx.ASGITransport
app.state.backend_transport = None
app.add_middleware(SessionRefreshMiddleware)
app.include_router(auth_router, tags=["auth"])
app.include_router(bookmarks_router, tags=["bookmarks"])
app.include_router(pages_router, tags=["pages"])


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "web_app"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "web_app.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
