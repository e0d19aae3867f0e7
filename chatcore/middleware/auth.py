from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from chatcore.config.settings import get_settings
from chatcore.core.errors import app_error_response, request_id_from_request

USER_HEADER = "x-chatcore-user-id"
ORG_HEADER = "x-chatcore-org-id"
BYPASS_PATHS = {
    "/healthz",
    "/readyz",
    "/metrics",
    "/openapi.json",
    "/docs",
    "/docs/oauth2-redirect",
}


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in BYPASS_PATHS:
            return await call_next(request)

        request_id = request_id_from_request(request)
        settings = get_settings()

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            return app_error_response(
                401, "auth_missing", "auth", "Missing bearer token", request_id
            )

        token = auth_header.removeprefix("Bearer ").strip()
        if token not in settings.api_key_set:
            return app_error_response(401, "auth_invalid", "auth", "Invalid API key", request_id)

        user_id = request.headers.get(USER_HEADER, "").strip()
        if not user_id:
            return app_error_response(
                422,
                "missing_required_headers",
                "validation",
                f"Missing required headers: {USER_HEADER}",
                request_id,
            )

        request.state.user_id = user_id
        request.state.org_id = request.headers.get(ORG_HEADER, "").strip() or None
        return await call_next(request)
