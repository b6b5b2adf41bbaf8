"""Issue and verify signed bearer tokens."""

import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from authlib.jose import JoseError, jwt
from authlib.jose.errors import BadSignatureError, ExpiredTokenError
from loguru import logger

from src.users.core.errors import TokenExpired, TokenInvalid
from src.users.core.models.token import PURPOSE_CLAIM, RESERVED_CLAIMS, TokenClaims
from src.users.runtime.config.config_data import JWTConfig


class TokenService:
    """Signs and verifies HMAC bearer tokens carrying user claims.

    The signing secret is taken from the ``JWTConfig`` handed to the constructor
    and never changes for the lifetime of the instance.
    """

    def __init__(
        self, config: JWTConfig, clock: Callable[[], float] = time.time
    ) -> None:
        if not config.signing_secret:
            raise ValueError("JWT signing secret not configured")
        self._config = config.model_copy(deep=True)
        self._secret = config.signing_secret
        self._clock = clock

    @property
    def default_ttl(self) -> int:
        return self._config.token_ttl_seconds

    def issue(
        self,
        user_id: str,
        claims: dict[str, Any] | None = None,
        ttl: int | timedelta | None = None,
        purpose: str | None = None,
    ) -> str:
        """Generate a signed token for ``user_id``.

        Args:
            user_id: Subject (sub) claim
            claims: Extra claims such as ``roles``; registered claim names are ignored
            ttl: Lifetime in seconds or as a timedelta (defaults to config)
            purpose: Single action the token is good for; such a token is never
                accepted as a bearer token

        Returns:
            Compact-serialized JWT
        """
        if ttl is None:
            ttl_seconds = self._config.token_ttl_seconds
        elif isinstance(ttl, timedelta):
            ttl_seconds = int(ttl.total_seconds())
        else:
            ttl_seconds = int(ttl)

        now = int(self._clock())
        payload: dict[str, Any] = {
            "iss": self._config.issuer,
            "sub": user_id,
            "iat": now,
            "exp": now + ttl_seconds,
        }
        if claims:
            payload.update(
                {
                    k: v
                    for k, v in claims.items()
                    if k not in RESERVED_CLAIMS and k != PURPOSE_CLAIM
                }
            )
        if purpose:
            payload[PURPOSE_CLAIM] = purpose

        header = {"alg": self._config.algorithm, "typ": "JWT"}
        token = jwt.encode(header, payload, self._secret)
        return token.decode() if isinstance(token, bytes) else token

    def verify(self, token: str, purpose: str | None = None) -> TokenClaims:
        """Check signature, then expiry, and return the token's claims.

        ``purpose`` must match the purpose the token was issued for; bearer
        tokens have none.

        Raises:
            TokenInvalid: malformed token or bad signature
            TokenExpired: signature is valid but the token has expired
        """
        claims_options = {
            "sub": {"essential": True},
            "exp": {"essential": True},
            "iss": {"essential": True, "value": self._config.issuer},
        }
        try:
            claims = jwt.decode(token, self._secret, claims_options=claims_options)
        except BadSignatureError as exc:
            logger.bind(event="token.bad_signature").info("Token signature rejected")
            raise TokenInvalid("bad_signature") from exc
        except (JoseError, ValueError, TypeError) as exc:
            raise TokenInvalid("malformed", f"Malformed token: {exc}") from exc

        try:
            claims.validate(now=int(self._clock()), leeway=self._config.clock_skew)
        except ExpiredTokenError as exc:
            raise TokenExpired("Token has expired") from exc
        except JoseError as exc:
            raise TokenInvalid("malformed", f"Invalid claims: {exc}") from exc

        try:
            verified = TokenClaims.from_payload(dict(claims))
        except (KeyError, ValueError, TypeError) as exc:
            raise TokenInvalid("malformed", f"Invalid claims: {exc}") from exc

        if verified.purpose != purpose:
            raise TokenInvalid("malformed", "Token is not valid for this use")
        return verified
