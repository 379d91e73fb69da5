"""
JWT token service for API authentication.

Tokens carry a role and, for account-scoped callers, the WhatsApp account they
may operate on.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from wa_gateway.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, subject: str, role: str, account_id: str | None = None) -> str:
        """
        Create a JWT token.

        Args:
            subject: Caller identifier
            role: "admin" or "account"
            account_id: WhatsApp account the caller owns, if any

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": subject,
            "role": role,
            "account_id": account_id,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None
