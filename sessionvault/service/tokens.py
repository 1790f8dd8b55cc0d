from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional, Tuple

from sessionvault.config import Settings
from sessionvault.logging import get_logger

logger = get_logger(__name__)


class AccessTokenCodec:
    """Minimal HS256 bearer-token codec for access tokens."""

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def mint(self, user_id: str, role: str, email: str) -> Tuple[str, int]:
        """Return ``(token, exp)`` for a fresh access token."""
        exp = int(self._clock()) + self.settings.access_token_ttl_minutes * 60
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "role": role,
            "email": email,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "exp": exp,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}", exp

    def decode(self, token: str, *, verify_exp: bool = True) -> Optional[dict[str, Any]]:
        """Verify and decode ``token``.

        Signature, algorithm, issuer, audience and token type are always
        checked; ``verify_exp=False`` only skips the expiry check so the
        refresh flow can identify the caller of an expired access token.
        """
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
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
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        if payload.get("token_type") != "access" or not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if verify_exp and exp_ts <= self._clock():
            return None
        return payload

    def seconds_remaining(self, token: str) -> int:
        """Remaining lifetime of a validly signed token, 0 when expired or invalid."""
        payload = self.decode(token, verify_exp=False)
        if not payload:
            return 0
        return max(0, int(float(payload["exp"]) - self._clock()))


__all__ = ["AccessTokenCodec"]
