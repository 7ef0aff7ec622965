#  HDR Backend - Token Verification
#
#  Decodes Supabase-issued HS256 access tokens. Sessions are issued by
#  Supabase; this service only verifies them.
#
#  Depends on: config.py
#  Used by:    container.py, middleware/auth.py

import uuid

import jwt


class TokenVerifier:
    """Verifies bearer tokens and extracts the caller identity."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self._secret = secret
        self._algorithm = algorithm

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def decode(self, token: str) -> dict:
        """Signature and expiry are checked. Raises jwt.PyJWTError on failure."""
        if not self._secret:
            raise jwt.InvalidTokenError("token verification is not configured")
        return jwt.decode(
            token,
            self._secret,
            algorithms=[self._algorithm],
            options={"verify_aud": False, "require": ["sub", "exp"]},
        )

    def identify(self, token: str) -> dict:
        """Decode and map the claims to the user dict the routes work with."""
        payload = self.decode(token)
        sub = payload.get("sub", "")
        try:
            user_id = str(uuid.UUID(sub))
        except (ValueError, TypeError, AttributeError) as e:
            raise jwt.InvalidTokenError("token subject is not a valid user id") from e
        return {
            "id": user_id,
            "email": payload.get("email", ""),
            "role": payload.get("role", ""),
        }
