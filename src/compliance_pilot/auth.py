"""Tenant context for requests handled by the controls engine.

Token issuance and verification happen in the upstream API gateway. The
gateway forwards the authenticated identity as headers, which
``get_current_user`` turns into a TenantContext:

- X-Tenant-ID: owning tenant UUID
- X-User-ID:   acting user UUID
- X-User-Role: admin | compliance_officer | surveillance_analyst | operations_head | auditor
"""

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

# Roles allowed to author and execute controls.
CONTROL_AUTHOR_ROLES = frozenset({"admin", "compliance_officer"})


@dataclass(frozen=True)
class TenantContext:
    """Authenticated caller identity, scoped to one tenant.

    Attributes:
        tenant_id: Owning tenant UUID. Every repository query filters on it.
        user_id: Acting user UUID.
        role: Caller's role within the tenant.
    """

    tenant_id: uuid.UUID
    user_id: uuid.UUID
    role: str = "auditor"


def get_current_user(
    x_tenant_id: Annotated[uuid.UUID, Header()],
    x_user_id: Annotated[uuid.UUID, Header()],
    x_user_role: Annotated[str, Header()] = "auditor",
) -> TenantContext:
    """FastAPI dependency building a TenantContext from gateway headers.

    Args:
        x_tenant_id: Tenant UUID header.
        x_user_id: User UUID header.
        x_user_role: Role header.

    Returns:
        The caller's TenantContext.
    """
    return TenantContext(tenant_id=x_tenant_id, user_id=x_user_id, role=x_user_role)


def require_control_author(
    tenant: Annotated[TenantContext, Depends(get_current_user)],
) -> TenantContext:
    """FastAPI dependency that only admits admins and compliance officers.

    Raises:
        HTTPException: 403 when the caller's role may not author or execute controls.
    """
    if tenant.role not in CONTROL_AUTHOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{tenant.role}' may not modify or execute controls",
        )
    return tenant
