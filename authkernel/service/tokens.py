"""HS256 JWT minting and verification for access and refresh tokens.

Access and refresh tokens are signed with different secrets, so a token of
one kind never verifies as the other even before the ``type`` claim is
checked.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from authkernel.clock import Clock, SystemClock
from authkernel.logging import get_logger
from authkernel.service.errors import TokenExpiredError, TokenInvalidError
from authkernel.storage.models import Role

logger = get_logger(__name__)

REFRESH_TOKEN_TYPE = "refresh"
_HEADER = {"alg": "HS256", "typ": "JWT"}


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    role: Role
    session_id: str
    exp: int
    type: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str
    token_type: str = "Bearer"


@dataclass(frozen=True)
class AccessGrant:
    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    # only populated when refresh tokens rotate
    refresh_token: Optional[str] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


class TokenCodec:
    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl_minutes: int = 15,
        refresh_ttl_minutes: int = 7 * 24 * 60,
        clock: Optional[Clock] = None,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.access_ttl_seconds = access_ttl_minutes * 60
        self.refresh_ttl_seconds = refresh_ttl_minutes * 60
        self.clock = clock or SystemClock()

    @classmethod
    def from_settings(cls, settings, clock: Optional[Clock] = None) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_minutes=settings.refresh_token_ttl_minutes,
            clock=clock,
        )

    def _timestamp(self) -> int:
        return int(self.clock.now().timestamp())

    # generic ---------------------------------------------------------------

    def mint(
        self,
        claims: dict[str, Any],
        secret: str,
        ttl_seconds: int,
        *,
        min_exp: Optional[int] = None,
    ) -> str:
        exp = self._timestamp() + ttl_seconds
        if min_exp is not None:
            exp = max(exp, min_exp)
        payload = {**claims, "exp": exp}
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(secret, signing_input)}"

    def verify(self, token: str, secret: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalidError("Malformed token")
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenInvalidError("Malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("Unsupported token algorithm")
        if not hmac.compare_digest(_sign(secret, f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalidError("Invalid token signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenInvalidError("Malformed token payload")
        if not isinstance(payload, dict):
            raise TokenInvalidError("Malformed token payload")
        exp = payload.get("exp")
        if not isinstance(exp, int) or isinstance(exp, bool):
            raise TokenInvalidError("Token has no expiration")
        # valid through the exp second itself
        if self._timestamp() > exp:
            raise TokenExpiredError("Token has expired")
        return payload

    # typed helpers -----------------------------------------------------------

    @staticmethod
    def _base_claims(account_id: str, role: Role | str, session_id: str) -> dict[str, Any]:
        return {
            "accountId": account_id,
            "role": Role(role).value,
            "sessionId": session_id,
        }

    def mint_access(self, account_id: str, role: Role | str, session_id: str) -> str:
        return self.mint(
            self._base_claims(account_id, role, session_id),
            self._access_secret,
            self.access_ttl_seconds,
        )

    def mint_refresh(
        self,
        account_id: str,
        role: Role | str,
        session_id: str,
        *,
        min_exp: Optional[int] = None,
    ) -> str:
        claims = self._base_claims(account_id, role, session_id)
        claims["type"] = REFRESH_TOKEN_TYPE
        return self.mint(
            claims, self._refresh_secret, self.refresh_ttl_seconds, min_exp=min_exp
        )

    def mint_pair(self, account_id: str, role: Role | str, session_id: str) -> TokenPair:
        return TokenPair(
            access_token=self.mint_access(account_id, role, session_id),
            refresh_token=self.mint_refresh(account_id, role, session_id),
            expires_in=self.access_ttl_seconds,
            session_id=session_id,
        )

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any]) -> TokenClaims:
        account_id = payload.get("accountId")
        session_id = payload.get("sessionId")
        if not isinstance(account_id, str) or not isinstance(session_id, str):
            raise TokenInvalidError("Token is missing required claims")
        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise TokenInvalidError("Token carries an unknown role")
        return TokenClaims(
            account_id=account_id,
            role=role,
            session_id=session_id,
            exp=payload["exp"],
            type=payload.get("type"),
        )

    def verify_access(self, token: str) -> TokenClaims:
        payload = self.verify(token, self._access_secret)
        if "type" in payload:
            raise TokenInvalidError("Not an access token")
        return self._claims_from_payload(payload)

    def verify_refresh(self, token: str) -> TokenClaims:
        payload = self.verify(token, self._refresh_secret)
        if payload.get("type") != REFRESH_TOKEN_TYPE:
            raise TokenInvalidError("Not a refresh token")
        return self._claims_from_payload(payload)

    # inspection without verification ---------------------------------------

    @staticmethod
    def decode_unverified(token: str) -> Optional[dict[str, Any]]:
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
        except (AttributeError, ValueError, UnicodeDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    def get_expiration(self, token: str) -> Optional[datetime]:
        payload = self.decode_unverified(token)
        exp = payload.get("exp") if payload else None
        if not isinstance(exp, int) or isinstance(exp, bool):
            return None
        return datetime.fromtimestamp(exp, tz=timezone.utc)

    def is_expired(self, token: str) -> bool:
        expiration = self.get_expiration(token)
        if expiration is None:
            return True
        return self._timestamp() > int(expiration.timestamp())
