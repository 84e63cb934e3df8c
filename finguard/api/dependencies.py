"""FastAPI dependencies for the engine.

Routes get the authenticated principal and permission checks as
dependencies; engine errors become JSON responses through
``register_exception_handlers``.
"""

from typing import Annotated

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from finguard.core.credential_store import Principal
from finguard.core.engine import AuthEngine
from finguard.core.errors import AuthError, ForbiddenError, RateExceededError
from finguard.core.logging import get_logger
from finguard.core.rbac import Permission

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


def get_auth_engine(request: Request) -> AuthEngine:
    """The engine created by the application lifespan."""
    return request.app.state.auth_engine


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    engine: Annotated[AuthEngine, Depends(get_auth_engine)],
) -> Principal:
    """Authenticate the request's bearer token."""
    raw_header = f"{credentials.scheme} {credentials.credentials}" if credentials else None
    return await engine.authenticate(raw_header)


class PermissionChecker:
    """FastAPI dependency for permission checking.

    Usage:
        @router.post("/loans/{loan_id}/approve")
        async def approve_loan(
            principal: Principal = Depends(
                PermissionChecker(Permission(ResourceKind.LOANS, ActionKind.APPROVE))
            ),
        ):
            ...

    Passes if the principal holds any of ``permissions`` (all of them with
    ``require_all``) and returns the principal.
    """

    def __init__(self, *permissions: Permission, require_all: bool = False):
        if not permissions:
            raise ValueError("PermissionChecker needs at least one permission")
        self.permissions = permissions
        self.require_all = require_all

    async def __call__(
        self,
        principal: Annotated[Principal, Depends(get_current_principal)],
        engine: Annotated[AuthEngine, Depends(get_auth_engine)],
    ) -> Principal:
        if self.require_all:
            allowed = await engine.permissions.has_all(principal.id, self.permissions)
        else:
            allowed = await engine.permissions.has_any(principal.id, self.permissions)

        if not allowed:
            logger.info(
                "Permission check failed",
                user_id=principal.id,
                required=[str(p) for p in self.permissions],
                require_all=self.require_all,
            )
            raise ForbiddenError(f"Missing permissions: {[str(p) for p in self.permissions]}")
        return principal


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    headers = {}
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    elif isinstance(exc, RateExceededError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code.value, "detail": exc.public_message},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map ``AuthError`` to ``{"error": code, "detail": public_message}`` responses."""
    app.add_exception_handler(AuthError, auth_error_handler)
