"""
Multi-tenant context enforcement.

CRITICAL SECURITY REQUIREMENTS:
- tenant_id is ALWAYS extracted from the verified JWT, NEVER from request body/query
- All /api/ requests without valid tenant context are rejected
- All database queries are scoped by tenant_id

JWT claims:
- sub: User ID (recorded as reviewer on approvals)
- tenant_id (or org_id): Tenant the token is scoped to
- roles: Role names, see autopilot.constants.permissions

Configuration:
- AUTH_JWT_SECRET: shared secret or public key (required)
- AUTH_JWT_ALGORITHM: signing algorithm (default: HS256)
- AUTH_JWT_ISSUER: expected issuer (optional; verified when set)
"""

import logging
import os
from typing import Optional

import jwt
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError

from autopilot.constants.permissions import Permission, roles_have_permission

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

PUBLIC_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}


class TenantContext:
    """Immutable tenant context extracted from JWT."""

    def __init__(
        self,
        tenant_id: str,
        user_id: str,
        roles: list[str],
    ):
        if not tenant_id:
            raise ValueError("tenant_id cannot be empty")
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.roles = roles

    def has_permission(self, permission: Permission) -> bool:
        return roles_have_permission(self.roles, permission)

    def __repr__(self) -> str:
        return f"<TenantContext(tenant_id={self.tenant_id}, user_id={self.user_id}, roles={self.roles})>"


def _forbidden(detail: str) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": detail})


class TenantContextMiddleware:
    """
    FastAPI middleware that enforces tenant isolation.

    Verifies the bearer token and attaches a TenantContext to request.state.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithm: Optional[str] = None,
        issuer: Optional[str] = None,
    ):
        # Environment is read per request so the module imports without it
        self._secret = secret
        self._algorithm = algorithm
        self._issuer = issuer

    @property
    def secret(self) -> Optional[str]:
        return self._secret or os.getenv("AUTH_JWT_SECRET")

    @property
    def algorithm(self) -> str:
        return self._algorithm or os.getenv("AUTH_JWT_ALGORITHM", "HS256")

    @property
    def issuer(self) -> Optional[str]:
        return self._issuer or os.getenv("AUTH_JWT_ISSUER")

    def decode(self, token: str) -> TenantContext:
        """
        Verify a token and build the tenant context.

        Raises:
            InvalidTokenError: If the signature, expiry or issuer is invalid
            ValueError: If the token has no user or tenant
        """
        options = {"verify_aud": False, "verify_iss": bool(self.issuer)}
        payload = jwt.decode(
            token,
            self.secret,
            algorithms=[self.algorithm],
            issuer=self.issuer,
            options=options,
        )

        user_id = payload.get("sub")
        if not user_id:
            raise ValueError("Token missing sub claim")

        roles = payload.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]

        return TenantContext(
            tenant_id=payload.get("tenant_id") or payload.get("org_id"),
            user_id=user_id,
            roles=[str(r).lower() for r in roles],
        )

    async def __call__(self, request: Request, call_next):
        """
        Process request and extract tenant context from JWT.

        SECURITY: tenant_id is ONLY extracted from JWT, never from request body/query.
        """
        if request.url.path in PUBLIC_PATHS or not request.url.path.startswith("/api/"):
            return await call_next(request)

        if not self.secret:
            logger.warning(
                "Authentication not configured - protected endpoint accessed",
                extra={"path": request.url.path, "method": request.method},
            )
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"detail": "Authentication service not configured"},
            )

        credentials: Optional[HTTPAuthorizationCredentials] = await security(request)
        if not credentials or not credentials.credentials:
            logger.warning(
                "Request missing authorization token",
                extra={"path": request.url.path, "method": request.method},
            )
            return _forbidden("Missing or invalid authorization token")

        try:
            tenant_context = self.decode(credentials.credentials)
        except (InvalidTokenError, ValueError) as e:
            logger.warning(
                "Invalid authorization token",
                extra={"path": request.url.path, "error": str(e)},
            )
            return _forbidden("Invalid authorization token")

        request.state.tenant_context = tenant_context

        response = await call_next(request)
        response.headers["X-Tenant-ID"] = tenant_context.tenant_id
        return response


def get_tenant_context(request: Request) -> TenantContext:
    """
    Extract tenant context from request state.

    Raises 403 if tenant context is missing.
    Use this in route handlers to access tenant_id.
    """
    if not hasattr(request.state, "tenant_context"):
        logger.error(
            "Route handler accessed without tenant context",
            extra={"path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant context not available",
        )

    return request.state.tenant_context


def require_permission(permission: Permission, detail: str):
    """
    Build a FastAPI dependency that rejects callers lacking a permission.

    Usage:
        @router.post("/x", dependencies=[Depends(require_permission(Permission.APPROVALS_DECIDE, "..."))])
    """

    def _check(request: Request) -> TenantContext:
        tenant_ctx = get_tenant_context(request)
        if not tenant_ctx.has_permission(permission):
            logger.warning(
                "Permission denied",
                extra={
                    "tenant_id": tenant_ctx.tenant_id,
                    "user_id": tenant_ctx.user_id,
                    "permission": permission.value,
                },
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
        return tenant_ctx

    return _check
