from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

from gateway.infrastructure.security.token_validator import extract_bearer_token, verify_token

logger = structlog.get_logger(__name__)

PROTECTED_PREFIX = "/api/"


def install_auth_middleware(app: FastAPI):
    """Require the gateway secret as a bearer token on every ``/api/*`` request"""

    @app.middleware("http")
    async def token_security_middleware(request: Request, call_next):
        if request.url.path.startswith(PROTECTED_PREFIX) and request.method != "OPTIONS":
            settings = request.app.state.runtime.settings
            token = extract_bearer_token(request.headers.get("Authorization"))

            if not verify_token(token, settings.secret_token):
                logger.warning("Blocked request", path=request.url.path,
                               client=request.client.host if request.client else None,
                               token_provided=bool(token))
                return JSONResponse(status_code=401, content={"error": "Unauthorized: Invalid Secret Token"})

        response = await call_next(request)
        return response
