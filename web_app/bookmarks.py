"""
Bookmark API: create, delete, and the owner's snapshot for headless tabs.
The owner is always the verified principal; any owner sent by the client is ignored.
"""
import logging
from urllib.parse import urlsplit

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from web_app.cookies import RequestCookies
from web_app.pages import load_bookmarks
from web_app.session import backend_for

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")

TITLE_MAX_LENGTH = 200

# Schemes accepted for stored links
ALLOWED_URL_SCHEMES = ("http", "https")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def is_absolute_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ALLOWED_URL_SCHEMES and bool(parts.netloc) and " " not in value


async def _authenticated(request: Request):
    cookies = RequestCookies(request)
    client = backend_for(request, cookies)
    result = await client.current_principal()
    return cookies, client, result.data


@router.post("/bookmarks")
async def create_bookmark(request: Request):
    """Body {url, title}. 201 {"bookmark": row}; 400 on bad input; 500 with the store's message."""
    cookies, client, principal = await _authenticated(request)
    if principal is None:
        return cookies.apply(_error(401, "Unauthorized"))

    try:
        body = await request.json()
    except ValueError:
        return cookies.apply(_error(400, "Invalid JSON body"))
    if not isinstance(body, dict):
        return cookies.apply(_error(400, "Invalid JSON body"))

    url = body.get("url")
    title = body.get("title")
    url = url.strip() if isinstance(url, str) else ""
    title = title.strip() if isinstance(title, str) else ""
    if not url or not title:
        return cookies.apply(_error(400, "url and title are required"))
    if not is_absolute_url(url):
        return cookies.apply(_error(400, "Invalid URL format"))
    if len(title) > TITLE_MAX_LENGTH:
        return cookies.apply(_error(400, f"title must be at most {TITLE_MAX_LENGTH} characters"))

    result = await (
        client.table("bookmarks")
        .insert({"url": url, "title": title, "owner_id": principal.user_id})
        .select()
        .single()
        .execute()
    )
    if result.error is not None:
        logger.warning("Insert failed for owner=%s: %s", principal.user_id, result.error.message)
        return cookies.apply(_error(500, result.error.message))
    return cookies.apply(JSONResponse({"bookmark": result.data}, status_code=201))


@router.delete("/bookmarks")
async def delete_bookmark(request: Request, id: str | None = None):
    """Delete by id within the caller's rows. 200 {"success": true} also when nothing matched."""
    cookies, client, principal = await _authenticated(request)
    if principal is None:
        return cookies.apply(_error(401, "Unauthorized"))
    if not id:
        return cookies.apply(_error(400, "id query param is required"))

    result = await (
        client.table("bookmarks")
        .delete()
        .eq("id", id)
        .eq("owner_id", principal.user_id)
        .execute()
    )
    if result.error is not None:
        logger.warning("Delete failed for owner=%s: %s", principal.user_id, result.error.message)
        return cookies.apply(_error(500, result.error.message))
    return cookies.apply(JSONResponse({"success": True}))


@router.get("/bookmarks")
async def list_bookmarks(request: Request):
    """The caller's bookmarks newest first, for tabs that render client-side."""
    cookies, client, principal = await _authenticated(request)
    if principal is None:
        return cookies.apply(_error(401, "Unauthorized"))
    bookmarks = await load_bookmarks(client, principal)
    return cookies.apply(JSONResponse({"bookmarks": bookmarks}))
