"""HTTP middleware: response hardening and optional Basic auth."""

import base64
import binascii
import logging
import secrets
from collections.abc import Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)

# Responses carry medication schedules; nothing may be cached or framed
_SECURITY_HEADERS = {
    "Cache-Control": "no-store",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        for name, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


def parse_basic_credentials(header: str) -> tuple[str, str] | None:
    """Split a ``Basic`` Authorization header into (username, password)."""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "basic" or not token:
        return None
    try:
        decoded = base64.b64decode(token.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """HTTP Basic authentication for every path outside ``exempt_paths``.

    Liveness checks must keep working without credentials, so ``/health``
    is exempt by default.
    """

    def __init__(
        self,
        app,
        username: str,
        password: str,
        realm: str = "Pillwatch",
        exempt_paths: Iterable[str] = ("/health",),
    ):
        super().__init__(app)
        self._username = username.encode("utf-8")
        self._password = password.encode("utf-8")
        self.realm = realm
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        credentials = parse_basic_credentials(request.headers.get("Authorization", ""))
        if credentials is None or not self._matches(*credentials):
            client = request.client.host if request.client else "unknown"
            logger.warning(
                "Rejected unauthenticated request to %s from %s", request.url.path, client
            )
            return Response(
                content="Unauthorized",
                status_code=401,
                headers={"WWW-Authenticate": f'Basic realm="{self.realm}"'},
            )
        return await call_next(request)

    def _matches(self, username: str, password: str) -> bool:
        # Timing-safe; both fields are always compared
        username_ok = secrets.compare_digest(username.encode("utf-8"), self._username)
        password_ok = secrets.compare_digest(password.encode("utf-8"), self._password)
        return username_ok and password_ok
