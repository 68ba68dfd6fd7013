from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from academic_portal.config import Settings
from academic_portal.logging import get_logger
from academic_portal.service.errors import InvalidOrExpiredToken
from academic_portal.storage.models import Account

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


class TokenIssuer:
    """Mints and validates HS256 access/refresh tokens.

    Access and refresh tokens are signed with different secrets, so one can
    never be replayed as the other even if the ``token_type`` claim were
    forged.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secrets = {
            ACCESS: settings.jwt_access_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._ttl = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, kind: str) -> str:
        return self._encode_segment(
            hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], kind: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _decode_jwt(self, token: str, kind: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        # base64url segments are ASCII; anything else cannot be ours
        if not token.isascii():
            return None

        # reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if not isinstance(header, dict) or header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm")
                return None
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        if payload.get("token_type") != kind:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload

    def _mint(self, claims: dict[str, Any], kind: str) -> tuple[str, datetime]:
        now = self._now()
        expires_at = now + self._ttl[kind]
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            # unique per token so two mints in the same second still differ
            "jti": str(uuid.uuid4()),
            "token_type": kind,
            **claims,
        }
        return self._encode_jwt(payload, kind), expires_at

    def issue_access(self, account: Account) -> tuple[str, datetime]:
        return self._mint(
            {
                "sub": account.id,
                "account_id": account.id,
                "role": account.role.value,
                "email": account.email,
            },
            ACCESS,
        )

    def issue(self, account: Account) -> TokenPair:
        access_token, access_exp = self.issue_access(account)
        refresh_token, refresh_exp = self._mint(
            {"sub": account.id, "account_id": account.id}, REFRESH
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def decode(self, token: str, kind: str = ACCESS) -> dict[str, Any]:
        if kind not in self._secrets:
            raise ValueError(f"unknown token kind: {kind}")
        payload = self._decode_jwt(token or "", kind)
        if payload is None or not payload.get("sub"):
            raise InvalidOrExpiredToken()
        return payload
