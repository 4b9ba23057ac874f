"""
credentials/tokens.py -- Identity provider for device auth tokens.

The provisioning script hands each device a signed JWT it uses to talk to the
backend. The token is scoped to exactly one device and carries the claims the
backend correlates on:

    sub / uid                 device id
    deviceId                  device id (explicit claim for device-side code)
    serial                    sanitized serial
    provisioningInstanceUuid  the uuid minted for this script instance

Signing: python-jose, same library the operator auth in auth/tokens.py uses.
HS256 with a shared secret by default; RS256/ES256 when the configured key is
a PEM private key. A missing or unusable key is a ConfigError -- it is an
operator problem, never retried.

verify() is the other half: POST /status accepts these tokens and checks the
instance uuid against the current record, so a replayed old script cannot
report on behalf of a newer credential issuance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from core.errors import ConfigError

logger = logging.getLogger("fleetprov.credentials")


@dataclass(frozen=True)
class StatusReporter:
    """Who is calling POST /status.

    shared=True means the deployment-wide update token was presented.
    Otherwise claims holds a verified device auth token.
    """

    shared: bool
    claims: dict[str, Any] = field(default_factory=dict)


class DeviceTokenSigner:
    """Issue and verify device-scoped JWTs."""

    def __init__(
        self,
        signing_key: str,
        algorithm: str = "HS256",
        issuer: str = "fleetprov",
        expire_seconds: int = 3600,
        verify_key: str | None = None,
    ) -> None:
        self._signing_key = signing_key
        self._algorithm = algorithm
        self._issuer = issuer
        self._expire_seconds = expire_seconds
        # HS* verifies with the signing secret; RS*/ES* need the public PEM.
        self._verify_key = verify_key or signing_key

    def _require_key(self) -> None:
        if not self._signing_key:
            logger.error("Device token signing key is not configured (DEVICE_TOKEN_SIGNING_KEY)")
            raise ConfigError(
                "Device token signing is not configured.",
                detail="Set DEVICE_TOKEN_SIGNING_KEY.",
            )
        if self._algorithm.startswith("HS") and len(self._signing_key) < 32:
            logger.error("Device token signing key is shorter than 32 characters")
            raise ConfigError("Device token signing key is too short.", detail="Use at least 32 characters.")

    def issue(self, device_id: str, claims: dict[str, Any]) -> str:
        """Return a signed token for device_id with the given extra claims."""
        self._require_key()
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "sub": device_id,
            "uid": device_id,
            "iss": self._issuer,
            "iat": now,
            "exp": now + timedelta(seconds=self._expire_seconds),
        }
        try:
            return jwt.encode(payload, self._signing_key, algorithm=self._algorithm)
        except (JWTError, ValueError, TypeError) as e:
            logger.error("Device token signing failed (%s): %s", self._algorithm, e)
            raise ConfigError("Device token signing failed.", detail=f"Check the {self._algorithm} signing key.") from e

    def verify(self, token: str) -> dict[str, Any] | None:
        """Decode a device token. Returns the claims, or None on any failure.

        Same contract as auth.tokens.decode_access_token: invalid means
        unauthenticated, and the caller decides the HTTP status.
        """
        if not self._signing_key:
            return None
        try:
            payload = jwt.decode(token, self._verify_key, algorithms=[self._algorithm], issuer=self._issuer)
        except JWTError:
            return None
        if "deviceId" not in payload or "provisioningInstanceUuid" not in payload:
            return None
        return payload
