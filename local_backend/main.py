"""
Local Backend: development stand-in for the hosted identity + data service.
Auth (/auth/v1), data (/rest/v1/bookmarks), change feed (/realtime/v1/websocket).
Port 54321.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from local_backend.authorize import router as authorize_router
from local_backend.database import init_db
from local_backend.realtime import router as realtime_router
from local_backend.rest import router as rest_router
from local_backend.tokens import router as tokens_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup."""
    init_db()
    yield


app = FastAPI(title="Local Backend", version="0.1.0", lifespan=lifespan)
app.include_router(authorize_router, tags=["authorize"])
app.include_router(tokens_router, tags=["auth"])
app.include_router(rest_router, tags=["rest"])
app.include_router(realtime_router, tags=["realtime"])


@app.exception_handler(HTTPException)
async def http_exception_body(request: Request, exc: HTTPException):
    """Send dict details as the body itself, the way the hosted service shapes its errors."""
    body = exc.detail if isinstance(exc.detail, dict) else {"message": str(exc.detail)}
    return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "local_backend"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "local_backend.main:app",
        host="127.0.0.1",
        port=54321,
        reload=True,
    )
