from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Optional, Union

from taskguard.config import Settings
from taskguard.logging import get_logger
from taskguard.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    TWO_FACTOR_TEMP = "2fa-temp"


@dataclass(frozen=True)
class AccessClaims:
    token_type: ClassVar[TokenType] = TokenType.ACCESS

    account_id: str
    session_id: str
    tenant_id: str
    jti: str
    issued_at: int
    expires_at: int
    remember_me: bool = False


@dataclass(frozen=True)
class RefreshClaims:
    token_type: ClassVar[TokenType] = TokenType.REFRESH

    account_id: str
    tenant_id: str
    jti: str
    issued_at: int
    expires_at: int
    session_id: Optional[str] = None


@dataclass(frozen=True)
class TempChallengeClaims:
    token_type: ClassVar[TokenType] = TokenType.TWO_FACTOR_TEMP

    account_id: str
    tenant_id: str
    jti: str
    issued_at: int
    expires_at: int
    initial_method: str


TokenClaims = Union[AccessClaims, RefreshClaims, TempChallengeClaims]


class TokenService:
    """Signs and verifies compact HS256 tokens.

    The ``typ`` claim selects one member of the ``TokenClaims`` union and
    the payload must carry exactly the fields that member requires, so a
    refresh or challenge token can never be read as an access token.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock

    # issuing
    def issue_access(
        self,
        account_id: str,
        session_id: str,
        remember_me: bool = False,
        *,
        tenant_id: str = "public",
    ) -> str:
        days = (
            self.settings.remember_me_ttl_days
            if remember_me
            else self.settings.access_token_ttl_days
        )
        return self._issue(
            TokenType.ACCESS,
            account_id,
            tenant_id,
            ttl_seconds=days * 86400,
            extra={"sid": session_id, "rmb": bool(remember_me)},
        )

    def issue_refresh(
        self,
        account_id: str,
        session_id: Optional[str] = None,
        *,
        tenant_id: str = "public",
    ) -> str:
        extra = {"sid": session_id} if session_id else {}
        return self._issue(
            TokenType.REFRESH,
            account_id,
            tenant_id,
            ttl_seconds=self.settings.refresh_token_ttl_days * 86400,
            extra=extra,
        )

    def issue_temp_challenge(
        self, account_id: str, initial_method: str, *, tenant_id: str = "public"
    ) -> str:
        return self._issue(
            TokenType.TWO_FACTOR_TEMP,
            account_id,
            tenant_id,
            ttl_seconds=self.settings.temp_token_ttl_minutes * 60,
            extra={"im": initial_method},
        )

    def access_ttl_seconds(self, remember_me: bool) -> int:
        days = (
            self.settings.remember_me_ttl_days
            if remember_me
            else self.settings.access_token_ttl_days
        )
        return days * 86400

    def _issue(
        self,
        token_type: TokenType,
        account_id: str,
        tenant_id: str,
        *,
        ttl_seconds: int,
        extra: Dict[str, Any],
    ) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account_id,
            "tid": tenant_id,
            "typ": token_type.value,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + ttl_seconds,
            **extra,
        }
        return self._encode_jwt(payload)

    # verification
    def verify(self, token: str, expected_type: TokenType) -> TokenClaims:
        """Return typed claims or raise TokenExpiredError / TokenInvalidError."""
        payload = self._decode_jwt(token)
        if payload.get("typ") != expected_type.value:
            logger.warning(
                "token_type_mismatch",
                expected=expected_type.value,
                presented=str(payload.get("typ")),
            )
            raise TokenInvalidError()
        exp = payload.get("exp")
        if not isinstance(exp, int) or isinstance(exp, bool):
            raise TokenInvalidError()
        if exp <= int(self._clock()):
            raise TokenExpiredError()
        return self._claims_from_payload(expected_type, payload)

    @staticmethod
    def _claims_from_payload(token_type: TokenType, payload: Dict[str, Any]) -> TokenClaims:
        try:
            common = {
                "account_id": _require_str(payload, "sub"),
                "tenant_id": _require_str(payload, "tid"),
                "jti": _require_str(payload, "jti"),
                "issued_at": int(payload["iat"]),
                "expires_at": int(payload["exp"]),
            }
            if token_type is TokenType.ACCESS:
                return AccessClaims(
                    session_id=_require_str(payload, "sid"),
                    remember_me=bool(payload.get("rmb", False)),
                    **common,
                )
            if token_type is TokenType.REFRESH:
                sid = payload.get("sid")
                if sid is not None and not isinstance(sid, str):
                    raise TokenInvalidError()
                return RefreshClaims(session_id=sid, **common)
            if "sid" in payload:
                raise TokenInvalidError()
            return TempChallengeClaims(
                initial_method=_require_str(payload, "im"), **common
            )
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Dict[str, Any]:
        if not isinstance(token, str) or not token.isascii():
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError()

        # Only HS256 is accepted; rejects alg=none and algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenInvalidError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenInvalidError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenInvalidError()
        if not isinstance(payload, dict):
            raise TokenInvalidError()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError()
        if payload.get("aud") != self.settings.jwt_audience:
            raise TokenInvalidError()
        return payload


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload[key]
    if not isinstance(value, str) or not value:
        raise ValueError(key)
    return value
