"""
Local backend configuration. Stands in for the hosted identity + data service during development and tests.
No production secrets here; the defaults only make a fresh checkout runnable.
"""
import os

# Public base URL of this service (what clients put in BACKEND_URL)
API_URL = os.environ.get("LOCAL_BACKEND_URL", "http://127.0.0.1:54321").rstrip("/")

# Public API key every caller must send as `apikey` (header or query)
ANON_KEY = os.environ.get("LOCAL_BACKEND_ANON_KEY", "local-anon-key")

# HS256 secret for access tokens (>= 32 bytes so PyJWT does not warn)
JWT_SECRET = os.environ.get("LOCAL_BACKEND_JWT_SECRET", "local-backend-development-jwt-secret-0000")
JWT_AUDIENCE = "authenticated"
JWT_ISSUER = f"{API_URL}/auth/v1"

DATABASE_URL = os.environ.get("LOCAL_BACKEND_DATABASE_URL", "sqlite:///./local_backend.db")

# Access token lifetime (seconds); clients refresh shortly before expiry
ACCESS_TOKEN_EXPIRES = int(os.environ.get("LOCAL_BACKEND_ACCESS_TOKEN_EXPIRES", "3600"))

# Refresh token lifetime (seconds); rotated on every use
REFRESH_TOKEN_EXPIRES = int(os.environ.get("LOCAL_BACKEND_REFRESH_TOKEN_EXPIRES", str(30 * 24 * 3600)))

# One-time authorization code lifetime (seconds)
CODE_TTL_SECONDS = 300

# Origins allowed in redirect_to after sign-in (comma-separated)
ALLOWED_REDIRECT_ORIGINS = {
    o.strip().rstrip("/")
    for o in os.environ.get(
        "LOCAL_BACKEND_ALLOWED_REDIRECT_ORIGINS", "http://127.0.0.1:8000,http://localhost:8000"
    ).split(",")
    if o.strip()
}

# Column check on bookmarks.title
TITLE_MAX_LENGTH = 200
