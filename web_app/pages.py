"""
Server-rendered pages: the dashboard (seeded with the owner's bookmarks) and the login page.
Pages render in a read-only cookie context; credential rotation happens in the session middleware.
"""
import html
import logging
from urllib.parse import urlencode, urlsplit

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from backend_client.client import BackendClient, Principal
from web_app import config
from web_app.cookies import RequestCookies
from web_app.session import backend_for

logger = logging.getLogger(__name__)
router = APIRouter()

LOGIN_ERROR_MESSAGES = {
    "auth_callback_failed": "Sign-in could not be completed. Please try again.",
}


async def load_bookmarks(client: BackendClient, principal: Principal) -> list[dict]:
    """Owner's bookmarks newest first. A store failure is logged and yields an empty list."""
    result = await client.table("bookmarks").select("*").order("created_at", desc=True).execute()
    if result.error is not None:
        logger.error("Error fetching bookmarks for owner=%s: %s", principal.user_id, result.error.message)
        return []
    return result.data or []


def display_url(url: str) -> str:
    """Hostname without www. plus path, no scheme."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.hostname:
        return url
    host = parts.hostname.removeprefix("www.")
    return host + (parts.path if parts.path not in ("", "/") else "")


def _count_text(n: int) -> str:
    if n == 0:
        return "Nothing saved yet. Add your first link below."
    return f"{n} saved link{'' if n == 1 else 's'}"


def _bookmark_item(b: dict) -> str:
    def e(s) -> str:
        return html.escape(str(s or ""))

    return f"""    <li data-id="{e(b.get('id'))}">
      <a href="{e(b.get('url'))}" target="_blank" rel="noopener noreferrer">{e(b.get('title'))}</a>
      <small>{e(display_url(b.get('url') or ''))} &middot; {e(b.get('created_at'))}</small>
      <button type="button" onclick="deleteBookmark('{e(b.get('id'))}')">Delete</button>
    </li>"""


def render_dashboard(principal: Principal, bookmarks: list[dict]) -> str:
    name = html.escape(principal.display_name)
    items = "\n".join(_bookmark_item(b) for b in bookmarks)
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Bookmarks</title></head>
<body>
  <header>
    <strong>Markd</strong>
    <span>{name}</span>
    <form method="post" action="/auth/signout" style="display:inline"><button type="submit">Sign out</button></form>
  </header>
  <main>
    <h2>Your bookmarks</h2>
    <p id="count">{html.escape(_count_text(len(bookmarks)))}</p>
    <form id="add-form">
      <input name="url" type="url" placeholder="https://example.com" required>
      <input name="title" type="text" placeholder="My favourite article" maxlength="200" required>
      <button type="submit">Save bookmark</button>
      <p id="add-error"></p>
    </form>
    <ul id="bookmarks">
{items}
    </ul>
  </main>
  <script>
    document.getElementById("add-form").addEventListener("submit", async (ev) => {{
      ev.preventDefault();
      const form = ev.target;
      const res = await fetch("/api/bookmarks", {{
        method: "POST",
        headers: {{"Content-Type": "application/json"}},
        body: JSON.stringify({{url: form.elements["url"].value.trim(), title: form.elements["title"].value.trim()}}),
      }});
      if (res.ok) {{ location.reload(); return; }}
      const data = await res.json().catch(() => ({{}}));
      document.getElementById("add-error").textContent = data.error || "Something went wrong";
    }});
    async function deleteBookmark(id) {{
      document.querySelector(`li[data-id="${{id}}"]`)?.remove();
      await fetch(`/api/bookmarks?id=${{encodeURIComponent(id)}}`, {{method: "DELETE"}}).catch(() => null);
    }}
  </script>
</body>
</html>"""


def render_login(error: str | None) -> str:
    message = LOGIN_ERROR_MESSAGES.get(error or "")
    error_html = f'\n  <p class="error">{html.escape(message)}</p>' if message else ""
    sign_in = "/auth/login?" + urlencode({"provider": config.OAUTH_PROVIDER, "next": "/"})
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Sign in</title></head>
<body>
  <h1>Markd</h1>
  <p>Save links, synced across every open tab.</p>{error_html}
  <p><a href="{html.escape(sign_in)}">Continue with {html.escape(config.OAUTH_PROVIDER.title())}</a></p>
</body>
</html>"""


@router.get("/", response_class=HTMLResponse)
async def dashboard(request: Request):
    """Re-verify the principal (the middleware already gated this path) and render the seeded list."""
    client = backend_for(request, RequestCookies(request, read_only=True))
    principal = (await client.current_principal()).data
    if principal is None:
        return RedirectResponse(url=config.LOGIN_PATH, status_code=302)
    bookmarks = await load_bookmarks(client, principal)
    return HTMLResponse(render_dashboard(principal, bookmarks))


@router.get(config.LOGIN_PATH, response_class=HTMLResponse)
async def login(request: Request, error: str | None = None):
    """Signed-in visitors go straight to the dashboard."""
    client = backend_for(request, RequestCookies(request, read_only=True))
    principal = (await client.current_principal()).data
    if principal is not None:
        return RedirectResponse(url="/", status_code=302)
    return HTMLResponse(render_login(error))
