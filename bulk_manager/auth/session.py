"""
Signed cookie sessions for the admin API.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import Request, Response
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired


SESSION_MAX_AGE = 12 * 60 * 60  # seconds
SESSION_COOKIE_NAME = "bulk_manager_session"
SESSION_SALT = "bulk-manager-session"


class SessionManager:
    """Issues and verifies signed session cookies."""

    def __init__(self, secret_key: str, secure: bool = False, max_age: int = SESSION_MAX_AGE):
        """
        Args:
            secret_key: Secret used to sign cookies
            secure: Only send the cookie over HTTPS
            max_age: Session lifetime in seconds
        """
        self._serializer = URLSafeTimedSerializer(secret_key, salt=SESSION_SALT)
        self.secure = secure
        self.max_age = max_age

    def create_session(self, response: Response, user_id: str = "admin") -> str:
        """Sign a new session and set it as cookie. Returns the token."""
        token = self._serializer.dumps({
            "user_id": user_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
        })

        response.set_cookie(
            key=SESSION_COOKIE_NAME,
            value=token,
            max_age=self.max_age,
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )
        return token

    def load_token(self, token: Optional[str]) -> Optional[dict]:
        """Session data of a token, or None if missing, tampered or expired."""
        if not token:
            return None
        try:
            return self._serializer.loads(token, max_age=self.max_age)
        except (BadSignature, SignatureExpired):
            return None

    def get_session(self, request: Request) -> Optional[dict]:
        return self.load_token(request.cookies.get(SESSION_COOKIE_NAME))

    def clear_session(self, response: Response) -> None:
        response.delete_cookie(
            key=SESSION_COOKIE_NAME,
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )

    def is_authenticated(self, request: Request) -> bool:
        return self.get_session(request) is not None
