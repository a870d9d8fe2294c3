from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import re
import html

from shared.utils import settings

# --- Rate Limiting ---
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

LOGIN_RATE_LIMIT = "5/minute"
WRITE_RATE_LIMIT = "60/minute"


def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# --- Security Headers Middleware ---
API_CSP = "default-src 'none'; frame-ancestors 'none'"
DOCS_PATHS = ("/docs", "/redoc", "/openapi.json")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Headers for a JSON API.

    Authenticated and /auth responses are marked no-store. The interactive
    docs load Swagger assets from a CDN and get no CSP.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if not request.url.path.startswith(DOCS_PATHS):
            response.headers["Content-Security-Policy"] = API_CSP
        if "authorization" in request.headers or request.url.path.startswith("/auth"):
            response.headers["Cache-Control"] = "no-store"
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


# --- Input Sanitization ---
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_input(text: str) -> str:
    """
    Sanitize free-text fields (names, addresses, notes, reasons):
    - Drop control characters
    - Strip whitespace
    - HTML escape
    """
    if not isinstance(text, str):
        return text

    clean_text = CONTROL_CHARS.sub("", text).strip()
    return html.escape(clean_text)


PASSWORD_RULES = "Password must be at least 8 characters long and contain uppercase, lowercase, and numbers"


def validate_password_strength(password: str) -> bool:
    """
    Validate password strength:
    - Min 8 chars
    - At least one uppercase
    - At least one lowercase
    - At least one digit
    """
    if len(password) < 8:
        return False
    if not re.search(r"[A-Z]", password):
        return False
    if not re.search(r"[a-z]", password):
        return False
    if not re.search(r"\d", password):
        return False
    return True
