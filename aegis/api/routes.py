from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from aegis.api.schemas import (
    AccountListResponse,
    AccountResponse,
    AuthResponse,
    ClaimsResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PermissionCreateRequest,
    PermissionResponse,
    RefreshRequest,
    RegisterRequest,
    RoleCreateRequest,
    RoleResponse,
    StatusChangeRequest,
)
from aegis.logging import get_logger
from aegis.service.auth import AuthResult
from aegis.service.errors import AuthenticationError, ForbiddenError
from aegis.service.runtime import get_runtime
from aegis.service.tokens import AccessClaims
from aegis.storage.models import (
    Account,
    AccountFilter,
    AccountStatus,
    AccountType,
    Permission,
    Role,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_BEARER_PREFIX = "bearer "


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        username=account.username,
        full_name=account.full_name,
        phone=account.phone,
        account_type=account.account_type.value,
        status=account.status.value,
        email_verified=account.email_verified,
        phone_verified=account.phone_verified,
        version=account.version,
        created_at=account.created_at,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    summary = result.account
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        refresh_expires_in=result.refresh_expires_in,
        account=AccountResponse(
            id=summary.id,
            email=summary.email,
            username=summary.username,
            full_name=summary.full_name,
            account_type=summary.account_type,
            status=summary.status,
            email_verified=summary.email_verified,
            phone_verified=summary.phone_verified,
        ),
    )


def _permission_response(perm: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=perm.id, resource=perm.resource, action=perm.action, description=perm.description
    )


def _role_response(role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        permissions=[_permission_response(p) for p in role.permissions],
    )


async def get_claims(authorization: Optional[str] = Header(None)) -> AccessClaims:
    """Validate the bearer token and hand its claims to the handler."""
    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        raise AuthenticationError("missing bearer token")
    token = authorization[len(_BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationError("missing bearer token")
    return await get_runtime().auth.validate_access_token(token)


def require_permission(resource: str, action: str):
    async def _dependency(claims: AccessClaims = Depends(get_claims)) -> AccessClaims:
        if not get_runtime().auth.check_permission(claims, resource, action):
            logger.warning(
                "permission_denied",
                account_id=claims.account_id,
                resource=resource,
                action=action,
            )
            raise ForbiddenError(
                "permission denied", detail={"resource": resource, "action": action}
            )
        return claims

    return _dependency


# auth ---------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    account = await runtime.accounts.register(
        body.email,
        body.password,
        body.username,
        body.full_name,
        phone=body.phone,
        account_type=body.account_type,
    )
    return Envelope(status="ok", data=_account_response(account))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh_session(
        body.refresh_token,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(body: LogoutRequest):
    await get_runtime().auth.logout(body.refresh_token)
    return Response(status_code=204)


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(claims: AccessClaims = Depends(get_claims)):
    revoked = await get_runtime().auth.logout_everywhere(claims.account_id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: AccessClaims = Depends(get_claims)):
    return Envelope(
        status="ok",
        data=ClaimsResponse(
            account_id=claims.account_id,
            email=claims.email,
            username=claims.username,
            account_type=claims.account_type,
            permissions=list(claims.permissions),
            expires_at=claims.expires_at,
            token_id=claims.token_id,
        ),
    )


# accounts -----------------------------------------------------------------


@router.get("/accounts", response_model=Envelope, tags=["accounts"])
async def list_accounts(
    status: Optional[AccountStatus] = Query(None),
    account_type: Optional[AccountType] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=AccountFilter.MAX_LIMIT),
    claims: AccessClaims = Depends(require_permission("users", "read")),
):
    filters = AccountFilter(
        status=status, account_type=account_type, search=search, offset=offset, limit=limit
    )
    accounts, total = await get_runtime().accounts.list_accounts(filters)
    return Envelope(
        status="ok",
        data=AccountListResponse(
            items=[_account_response(a) for a in accounts],
            total=total,
            offset=offset,
            limit=limit,
        ),
    )


@router.post("/accounts/{account_id}/status", response_model=Envelope, tags=["accounts"])
async def change_account_status(
    body: StatusChangeRequest,
    account_id: str = Path(..., max_length=64),
    claims: AccessClaims = Depends(require_permission("users", "write")),
):
    account = await get_runtime().accounts.change_status(
        account_id,
        body.status,
        reason=body.reason,
        expected_version=body.expected_version,
    )
    logger.info(
        "account_status_changed_by",
        account_id=account_id,
        actor_id=claims.account_id,
        status=account.status.value,
    )
    return Envelope(status="ok", data=_account_response(account))


@router.get("/accounts/{account_id}/roles", response_model=Envelope, tags=["accounts"])
async def get_account_roles(
    account_id: str = Path(..., max_length=64),
    claims: AccessClaims = Depends(require_permission("roles", "read")),
):
    runtime = get_runtime()
    await runtime.accounts.get(account_id)
    roles = await runtime.rbac.account_roles(account_id)
    return Envelope(status="ok", data=[_role_response(r) for r in roles])


@router.put("/accounts/{account_id}/roles/{role_id}", response_model=Envelope, tags=["accounts"])
async def assign_account_role(
    account_id: str = Path(..., max_length=64),
    role_id: str = Path(..., max_length=64),
    claims: AccessClaims = Depends(require_permission("roles", "assign")),
):
    runtime = get_runtime()
    await runtime.rbac.assign_role(account_id, role_id)
    roles = await runtime.rbac.account_roles(account_id)
    return Envelope(status="ok", data=[_role_response(r) for r in roles])


@router.delete("/accounts/{account_id}/roles/{role_id}", response_model=Envelope, tags=["accounts"])
async def remove_account_role(
    account_id: str = Path(..., max_length=64),
    role_id: str = Path(..., max_length=64),
    claims: AccessClaims = Depends(require_permission("roles", "assign")),
):
    runtime = get_runtime()
    await runtime.rbac.remove_role(account_id, role_id)
    roles = await runtime.rbac.account_roles(account_id)
    return Envelope(status="ok", data=[_role_response(r) for r in roles])


# roles & permissions ------------------------------------------------------


@router.post("/roles", response_model=Envelope, status_code=201, tags=["rbac"])
async def create_role(
    body: RoleCreateRequest,
    claims: AccessClaims = Depends(require_permission("roles", "write")),
):
    role = await get_runtime().rbac.create_role(body.name, body.description)
    return Envelope(status="ok", data=_role_response(role))


@router.get("/roles", response_model=Envelope, tags=["rbac"])
async def list_roles(claims: AccessClaims = Depends(require_permission("roles", "read"))):
    roles = await get_runtime().rbac.list_roles()
    return Envelope(status="ok", data=[_role_response(r) for r in roles])


@router.put("/roles/{role_id}/permissions/{permission_id}", response_model=Envelope, tags=["rbac"])
async def grant_role_permission(
    role_id: str = Path(..., max_length=64),
    permission_id: str = Path(..., max_length=64),
    claims: AccessClaims = Depends(require_permission("roles", "write")),
):
    role = await get_runtime().rbac.add_permission_to_role(role_id, permission_id)
    return Envelope(status="ok", data=_role_response(role))


@router.delete("/roles/{role_id}/permissions/{permission_id}", response_model=Envelope, tags=["rbac"])
async def revoke_role_permission(
    role_id: str = Path(..., max_length=64),
    permission_id: str = Path(..., max_length=64),
    claims: AccessClaims = Depends(require_permission("roles", "write")),
):
    role = await get_runtime().rbac.remove_permission_from_role(role_id, permission_id)
    return Envelope(status="ok", data=_role_response(role))


@router.post("/permissions", response_model=Envelope, status_code=201, tags=["rbac"])
async def create_permission(
    body: PermissionCreateRequest,
    claims: AccessClaims = Depends(require_permission("roles", "write")),
):
    perm = await get_runtime().rbac.create_permission(body.resource, body.action, body.description)
    return Envelope(status="ok", data=_permission_response(perm))


@router.get("/permissions", response_model=Envelope, tags=["rbac"])
async def list_permissions(claims: AccessClaims = Depends(require_permission("roles", "read"))):
    perms = await get_runtime().rbac.list_permissions()
    return Envelope(status="ok", data=[_permission_response(p) for p in perms])
