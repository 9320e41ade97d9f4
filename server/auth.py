"""
RealmOps Relay - Token Verification
====================================
The relay does not issue sessions; the panel does. The relay only checks
that callers present a JWT signed with the shared secret.

Security model:
- Shared HS256 secret (RELAY_JWT_SECRET in the environment or .env)
- REST routes: "Authorization: Bearer <token>"
- Websocket endpoints: "?token=<token>" (browsers cannot set headers there)
- No secret configured -> open access (local development)
"""

from jose import jwt, JWTError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials


JWT_ALGORITHM = "HS256"

# Security scheme for FastAPI dependency injection
security = HTTPBearer(auto_error=False)


class AuthManager:
    """
    Verifies panel-issued tokens.

    Attributes:
        secret: Shared signing secret, or None when auth is disabled.
    """

    def __init__(self, secret: str | None):
        self.secret = secret or None

    def is_configured(self) -> bool:
        """True if a secret is set and tokens are required."""
        return self.secret is not None

    def verify_token(self, token: str | None) -> bool:
        """
        Verify a JWT token is valid and not expired.

        Args:
            token: The JWT token string to verify.

        Returns:
            True if the token is valid or no secret is configured.
        """
        if not self.is_configured():
            return True
        if not token:
            return False
        try:
            jwt.decode(token, self.secret, algorithms=[JWT_ALGORITHM])
            return True
        except JWTError:
            return False


def require_auth(auth_manager: AuthManager):
    """
    Create a FastAPI dependency that enforces authentication.

    Usage in routes:
        @router.get("/api/sessions", dependencies=[Depends(require_auth(auth_mgr))])
        async def list_sessions(): ...
    """
    async def _verify(
        credentials: HTTPAuthorizationCredentials | None = Depends(security),
    ):
        if not auth_manager.is_configured():
            return True

        if credentials is None:
            raise HTTPException(status_code=401, detail="Authentication required")

        if not auth_manager.verify_token(credentials.credentials):
            raise HTTPException(status_code=401, detail="Invalid or expired token")

        return True

    return _verify
