"""Access-token validation.

Tokens are JWTs minted by the compliance platform. The subject identity used
for a submission is only ever taken from a token that passed :meth:`TokenValidator.validate`.
"""
from __future__ import annotations

import enum
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence

import jwt

from ..config import Settings

logger = logging.getLogger(__name__)

PRIMARY_SUBJECT_CLAIM = "user_id"
FALLBACK_SUBJECT_CLAIM = "sub"


class TokenErrorCode(str, enum.Enum):
    MALFORMED = "MALFORMED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    EXPIRED = "EXPIRED"
    NO_SUBJECT = "NO_SUBJECT"


class TokenError(Exception):
    """Raised when a bearer token cannot be trusted for this flow."""

    def __init__(self, code: TokenErrorCode, detail: str) -> None:
        super().__init__(f"{code.value}: {detail}")
        self.code = code
        self.detail = detail


@dataclass(frozen=True)
class TokenPayload:
    subject_id: int
    expires_at: Optional[int] = None
    issued_at: Optional[int] = None
    raw_claims: Dict[str, Any] = field(default_factory=dict)
    signature_verified: bool = True

    @property
    def callback_url(self) -> Optional[str]:
        value = self.raw_claims.get("callback_url")
        return value if isinstance(value, str) and value else None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _subject_from_claims(claims: Dict[str, Any]) -> Optional[int]:
    primary = claims.get(PRIMARY_SUBJECT_CLAIM)
    if isinstance(primary, float) and primary.is_integer():
        primary = int(primary)
    if isinstance(primary, int) and not isinstance(primary, bool) and primary > 0:
        return primary

    fallback = claims.get(FALLBACK_SUBJECT_CLAIM)
    if isinstance(fallback, bool) or fallback is None:
        return None
    try:
        subject = int(str(fallback).strip())
    except ValueError:
        return None
    return subject if subject > 0 else None


class TokenValidator:
    """Decode, verify and extract the subject from a bearer token.

    With a ``secret`` the signature is verified against ``algorithms``. Without
    one the validator can only run in decode-only mode, which has to be asked
    for explicitly through ``allow_unverified``.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        *,
        algorithms: Sequence[str] = ("HS256",),
        allow_unverified: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret and not allow_unverified:
            raise ValueError("token secret is required unless allow_unverified is set")
        self._secret = secret or None
        self._algorithms = list(algorithms)
        self._clock = clock
        if self._secret is None:
            logger.warning(
                "token.validator: no signing secret configured, running in DECODE-ONLY mode; "
                "token signatures are NOT verified"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenValidator":
        return cls(
            settings.token_secret,
            algorithms=settings.token_algorithms,
            allow_unverified=settings.allow_unverified_tokens,
        )

    @property
    def decode_only(self) -> bool:
        return self._secret is None

    def validate(self, token: str, *, now: Optional[float] = None) -> TokenPayload:
        """Return the trusted payload or raise :class:`TokenError`."""
        segments = token.split(".") if isinstance(token, str) else []
        if len(segments) != 3 or not all(segments):
            raise TokenError(TokenErrorCode.MALFORMED, "token must have three non-empty segments")

        claims = self._decode(token)
        for claim in ("exp", "iat"):
            value = claims.get(claim)
            if isinstance(value, float) and not math.isfinite(value):
                raise TokenError(TokenErrorCode.MALFORMED, f"{claim} claim is not a finite number")

        now_ms = (self._clock() if now is None else now) * 1000
        exp = claims.get("exp")
        if _is_number(exp) and exp * 1000 < now_ms:
            raise TokenError(TokenErrorCode.EXPIRED, "token has expired")

        subject_id = _subject_from_claims(claims)
        if subject_id is None:
            raise TokenError(TokenErrorCode.NO_SUBJECT, "no user id found in token")

        iat = claims.get("iat")
        return TokenPayload(
            subject_id=subject_id,
            expires_at=int(exp) if _is_number(exp) else None,
            issued_at=int(iat) if _is_number(iat) else None,
            raw_claims=dict(claims),
            signature_verified=not self.decode_only,
        )

    def _decode(self, token: str) -> Dict[str, Any]:
        if self._secret is None:
            logger.warning("token.validate: decoding without signature verification")
            try:
                return jwt.decode(token, options={"verify_signature": False})
            except jwt.InvalidTokenError as exc:
                raise TokenError(TokenErrorCode.MALFORMED, str(exc)) from exc

        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                # expiry is checked separately so that it maps to EXPIRED on our own clock
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "verify_aud": False,
                    "verify_sub": False,
                },
            )
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as exc:
            raise TokenError(TokenErrorCode.INVALID_SIGNATURE, str(exc)) from exc
        except jwt.InvalidTokenError as exc:
            raise TokenError(TokenErrorCode.MALFORMED, str(exc)) from exc


__all__ = ["TokenError", "TokenErrorCode", "TokenPayload", "TokenValidator"]
