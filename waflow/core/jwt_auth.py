# waflow/core/jwt_auth.py
"""
JWT validation for owner-scoped API access.
Tokens are issued elsewhere; this service only consumes the owner identity.
"""
import jwt
from typing import Optional, Dict, Any
from fastapi import HTTPException

from waflow.core.config import JWT_SECRET_KEY, JWT_ALGORITHM


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
            raise HTTPException(status_code=401, detail="JWT authentication is not configured")

        try:
            return jwt.decode(
                token,
                JWT_SECRET_KEY,
                algorithms=[JWT_ALGORITHM]
            )
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
    def get_owner_id(payload: Dict[str, Any]) -> Optional[str]:
        """
        Extract the owner id from a JWT payload.

        Accepts `owner_id`, `user_id`, `userId`, `sub` or `id`; a nested
        `user` object is unwrapped.
        """
        owner_id = (
            payload.get('owner_id') or
            payload.get('user_id') or
            payload.get('userId') or
            payload.get('sub') or
            payload.get('id')
        )

        if owner_id is None and isinstance(payload.get('user'), dict):
            user = payload['user']
            owner_id = user.get('id') or user.get('_id')

        return str(owner_id) if owner_id else None
