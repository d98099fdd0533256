from uuid import UUID

from fastapi import HTTPException, status

from eventhooks.core.tenant import get_current_tenant


def require_tenant_id() -> UUID:
    tenant_id = get_current_tenant()
    if tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "missing_tenant_header", "message": "Missing X-Tenant-ID header"},
        )
    return tenant_id
