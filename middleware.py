from fastapi import Request
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from auth import SESSION_COOKIE

PROTECTED_PAGES = ("/dashboard", "/expenses", "/income", "/budgets", "/goals")
AUTH_PAGES = ("/login", "/register")


def _is_protected(path: str) -> bool:
    return any(path == page or path.startswith(page + "/") for page in PROTECTED_PAGES)


class RouteProtectionMiddleware(BaseHTTPMiddleware):
    """Redirect browser navigation based on session cookie presence.

    Only checks that a cookie exists. Data access still goes through the
    session lookup in ``main.current_user``.
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        has_session = bool(request.cookies.get(SESSION_COOKIE))
        if _is_protected(path) and not has_session:
            return RedirectResponse(url="/login", status_code=307)
        if path in AUTH_PAGES and has_session:
            return RedirectResponse(url="/dashboard", status_code=307)
        return await call_next(request)
