"""
auth/tokens.py -- Bearer token issuance and verification.

Security design decisions:
  JWT: python-jose with HS512. Tokens carry the subject (username), an "auth"
       claim with the comma-joined authority names, iat and exp. The signing
       key is decoded once by core.config and injected here; this module never
       reads configuration itself.

  Verification is staged so every failure has exactly one kind:
         1. structure  -- header and payload must decode     -> MalformedTokenError
         2. algorithm  -- header must say HS512 / JWT         -> UnsupportedTokenError
         3. signature  -- HMAC must match the configured key  -> InvalidSignatureError
         4. claims     -- exp in the future, sub/auth present -> TokenExpiredError
                                                                 / UnsupportedTokenError
       An expired token with a good signature is therefore Expired, and a
       token signed with someone else's key is InvalidSignature even if it is
       also expired. Callers branch on the kind (refresh vs. re-login).

  Stateless: no store access, no mutable state after __init__. Safe to share
  one TokenService across threads.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import binascii
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from jose import JWTError, jwk, jwt
from jose.utils import base64url_decode

from auth.errors import (
    InvalidSignatureError,
    MalformedTokenError,
    TokenExpiredError,
    UnsupportedTokenError,
)
from auth.models import Principal

logger = logging.getLogger("staffgate.tokens")

_ALGORITHM = "HS512"
_AUTHORITY_DELIMITER = ","
# Same floor as core.config.MIN_SIGNING_KEY_BYTES; change both together.
MIN_KEY_BYTES = 64

_DECODE_OPTIONS = {
    "require_sub": True,
    "require_iat": True,
    "require_exp": True,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issue and parse HS512-signed JWTs.

    Usage:
        tokens = TokenService.from_settings(get_settings())
        token = tokens.issue_access("alice", ["USER_READ"])
        principal = tokens.parse(token)   # Principal("alice", ("USER_READ",))
    """

    def __init__(
        self,
        signing_key: bytes,
        access_validity_seconds: int = 3600,
        refresh_validity_seconds: int = 86400,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if len(signing_key) < MIN_KEY_BYTES:
            raise ValueError(f"HS512 signing key must be at least {MIN_KEY_BYTES} bytes.")
        self._key = jwk.construct(signing_key, _ALGORITHM)
        self.access_validity_seconds = access_validity_seconds
        self.refresh_validity_seconds = refresh_validity_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> TokenService:
        return cls(
            signing_key=settings.signing_key,
            access_validity_seconds=settings.access_token_validity_seconds,
            refresh_validity_seconds=settings.refresh_token_validity_seconds,
        )

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_access(self, subject: str, authorities: Iterable[str]) -> str:
        return self._issue(subject, authorities, self.access_validity_seconds)

    def issue_refresh(self, subject: str, authorities: Iterable[str]) -> str:
        return self._issue(subject, authorities, self.refresh_validity_seconds)

    def _issue(self, subject: str, authorities: Iterable[str], validity_seconds: int) -> str:
        names = list(authorities)
        for name in names:
            if not name or _AUTHORITY_DELIMITER in name:
                raise ValueError(f"Invalid authority name: {name!r}")
        issued_at = int(self._clock().timestamp())
        claims = {
            "sub": subject,
            "auth": _AUTHORITY_DELIMITER.join(names),
            "iat": issued_at,
            "exp": issued_at + validity_seconds,
        }
        return jwt.encode(claims, self._key, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def parse(self, token: str) -> Principal:
        """Verify a token and return its subject and authorities.

        Raises MalformedTokenError, UnsupportedTokenError, InvalidSignatureError
        (all TokenInvalidError) or TokenExpiredError.
        """
        try:
            header = jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise MalformedTokenError("Token is not a well-formed JWT.") from exc

        if header.get("alg") != _ALGORITHM or header.get("typ", "JWT") != "JWT":
            logger.warning("Rejected token with unsupported header alg=%s", header.get("alg"))
            raise UnsupportedTokenError("Token algorithm or type is not supported.")

        signing_input, _, crypto_segment = token.rpartition(".")
        try:
            message = signing_input.encode("ascii")
            signature = base64url_decode(crypto_segment.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise MalformedTokenError("Token segments are not base64url.") from exc
        if not self._key.verify(message, signature):
            logger.warning("Rejected token with invalid signature")
            raise InvalidSignatureError("Token signature does not verify.")

        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=[_ALGORITHM],
                options={**_DECODE_OPTIONS, "verify_exp": False},
            )
        except JWTError as exc:
            raise UnsupportedTokenError(f"Token claims are not supported: {exc}") from exc

        # Expiry is judged by the same clock that stamped iat/exp.
        expires_at = claims["exp"]
        if not isinstance(expires_at, int):
            raise UnsupportedTokenError("Token exp claim is not an integer.")
        if int(self._clock().timestamp()) > expires_at:
            raise TokenExpiredError()

        authorities = claims.get("auth")
        if not isinstance(authorities, str):
            raise UnsupportedTokenError("Token auth claim is missing or not a string.")
        return Principal(
            username=claims["sub"],
            authorities=tuple(a for a in authorities.split(_AUTHORITY_DELIMITER) if a),
        )
