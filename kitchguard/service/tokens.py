from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from kitchguard.config import Settings
from kitchguard.logging import get_logger
from kitchguard.service.errors import InvalidTokenError
from kitchguard.storage.models import Principal, Role

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    """Identity carried inside access and refresh tokens."""

    principal_id: str
    username: str
    role: Role
    tenant_id: Optional[str] = None
    branch_id: Optional[str] = None

    @classmethod
    def for_principal(cls, principal: Principal) -> "TokenClaims":
        return cls(
            principal_id=principal.id,
            username=principal.username,
            role=principal.role,
            tenant_id=principal.tenant_id,
            branch_id=principal.branch_id,
        )

    def matches(self, principal: Principal) -> bool:
        return self == TokenClaims.for_principal(principal)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime


def _utc_from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


class TokenService:
    """HS256 token minting and verification with separate access/refresh keys."""

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._access_key = settings.jwt_access_secret.encode()
        self._refresh_key = settings.jwt_refresh_secret.encode()
        self._clock = clock
        self.access_ttl_seconds = settings.access_token_ttl_minutes * 60
        self.refresh_ttl_seconds = settings.refresh_token_ttl_minutes * 60

    def _key_for(self, token_type: str) -> bytes:
        return self._access_key if token_type == ACCESS else self._refresh_key

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], key: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, key: bytes) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so a forged "none"/RS256 header is never honored
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )
        # compare_digest rejects non-ASCII str operands with TypeError
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "ignore")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self.settings.jwt_leeway_seconds:
            return None
        return payload

    def _payload(self, claims: TokenClaims, token_type: str, now: int, ttl: int) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": claims.principal_id,
            "username": claims.username,
            "role": claims.role.value,
            "tenant_id": claims.tenant_id,
            "branch_id": claims.branch_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl,
        }

    def mint_access(self, claims: TokenClaims) -> tuple[str, int]:
        """Return a fresh access token and its lifetime in seconds."""
        now = int(self._clock())
        payload = self._payload(claims, ACCESS, now, self.access_ttl_seconds)
        return self._encode_jwt(payload, self._access_key), self.access_ttl_seconds

    def issue(self, claims: TokenClaims) -> TokenPair:
        now = int(self._clock())
        access_token, expires_in = self.mint_access(claims)
        refresh_payload = self._payload(claims, REFRESH, now, self.refresh_ttl_seconds)
        return TokenPair(
            access_token=access_token,
            refresh_token=self._encode_jwt(refresh_payload, self._refresh_key),
            expires_in=expires_in,
            refresh_expires_at=_utc_from_timestamp(refresh_payload["exp"]),
        )

    def _verify(self, token: str, token_type: str) -> TokenClaims:
        payload = self._decode_jwt(token, self._key_for(token_type))
        if not payload or payload.get("token_type") != token_type:
            raise InvalidTokenError("invalid or expired token")
        try:
            return TokenClaims(
                principal_id=str(payload["sub"]),
                username=str(payload["username"]),
                role=Role(payload["role"]),
                tenant_id=payload.get("tenant_id"),
                branch_id=payload.get("branch_id"),
            )
        except (KeyError, ValueError):
            logger.warning("jwt_claims_malformed", token_type=token_type)
            raise InvalidTokenError("invalid or expired token")

    def verify_access(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS)

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH)
