"""
Web app configuration. Points at the hosted identity + data service (or local_backend in development).
"""
import os

# Base URL of the identity + data service
BACKEND_URL = os.environ.get("BACKEND_URL", "http://127.0.0.1:54321").rstrip("/")

# Public API key of that service (safe to expose to the browser)
BACKEND_ANON_KEY = os.environ.get("BACKEND_ANON_KEY", "local-anon-key")

# "development" or "production"; development trusts the request origin over x-forwarded-host
APP_ENV = os.environ.get("APP_ENV", "development")

# Mark session cookies Secure (on for HTTPS deployments)
COOKIE_SECURE = os.environ.get("COOKIE_SECURE", "false").lower() in ("1", "true", "yes")

# Where unauthenticated page requests are sent
LOGIN_PATH = os.environ.get("LOGIN_PATH", "/login")

# Identity provider offered on the login page
OAUTH_PROVIDER = os.environ.get("OAUTH_PROVIDER", "google")


def is_development() -> bool:
    return APP_ENV == "development"
