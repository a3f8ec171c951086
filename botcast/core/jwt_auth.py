"""
JWT Authentication for multi-tenant API access.
Tokens are issued by the operator panel; botcast only validates them.
"""
import jwt
from typing import Optional, Dict, Any
from fastapi import HTTPException

from botcast.core.config import JWT_SECRET_KEY, JWT_ALGORITHM


class JWTAuth:
    """JWT Authentication handler"""

    @staticmethod
    def decode_token(token: str) -> Dict[str, Any]:
        """
        Decode and validate JWT token.

        Raises:
            HTTPException: If token is invalid or expired
        """
        if not JWT_SECRET_KEY:
            raise HTTPException(status_code=401, detail="JWT authentication not configured")
        try:
            # PyJWT verifies `exp` itself
            return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=401,
                detail="Token has expired"
            )
        except jwt.InvalidTokenError:
            raise HTTPException(
                status_code=401,
                detail="Invalid token"
            )

    @staticmethod
    def get_tenant_id(payload: Dict[str, Any]) -> Optional[str]:
        """Extract tenant_id from JWT payload."""
        tenant_id = (
            payload.get('tenant_id') or
            payload.get('tenant') or
            payload.get('tenantId')
        )

        if isinstance(tenant_id, dict):
            tenant_id = tenant_id.get('id') or tenant_id.get('tenant_id')

        return str(tenant_id) if tenant_id else None

    @staticmethod
    def get_user_id(payload: Dict[str, Any]) -> Optional[str]:
        user_id = (
            payload.get('user_id') or
            payload.get('sub') or
            payload.get('id')
        )
        return str(user_id) if user_id else None
