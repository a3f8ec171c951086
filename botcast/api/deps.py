# botcast/api/deps.py
"""
API dependencies for authentication and database access.
Tenant comes from a JWT bearer token, or from X-Tenant-Id for internal callers.
"""
from typing import Optional, Dict, Any
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from botcast.core.jwt_auth import JWTAuth

# Security scheme (optional to allow the header fallback)
security = HTTPBearer(auto_error=False)


async def get_current_user_flexible(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Dict[str, Any]:
    """
    Priority:
    1. JWT Bearer token
    2. X-Tenant-Id header (internal automation)

    Returns user info dict with auth_type, user_id, tenant_id
    """
    if credentials and credentials.credentials:
        payload = JWTAuth.decode_token(credentials.credentials)
        return {
            "auth_type": "jwt",
            "user_id": JWTAuth.get_user_id(payload),
            "tenant_id": JWTAuth.get_tenant_id(payload),
            "payload": payload
        }

    tenant_id = request.headers.get("x-tenant-id")
    if tenant_id:
        return {
            "auth_type": "header",
            "user_id": "automation",
            "tenant_id": tenant_id,
        }

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required. Provide JWT token or X-Tenant-Id header."
    )


async def get_tenant_id_flexible(
    user: Dict[str, Any] = Depends(get_current_user_flexible)
) -> str:
    tenant_id = user.get("tenant_id")
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant ID not found in token"
        )
    return tenant_id
