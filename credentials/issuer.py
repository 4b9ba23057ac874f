"""
credentials/issuer.py -- Issues the credential pair embedded in a provisioning script.

Two authorities, called sequentially, both required:

  1. DeviceTokenSigner  -- application auth token bound to the device id and
                           the provisioning instance uuid.
  2. TailscaleClient    -- single-use, time-boxed overlay network join key.

The token is issued first. Signing is local and consumes nothing, so a
signing misconfiguration is detected before a join key allocation is spent.
If the join key then fails, the already-signed token is left unusable rather
than revoked: it names an instance uuid that the orchestrator rolls back, and
POST /status rejects tokens whose uuid is not the record's current one.

A join key cannot be invalidated that way, so revoke() deletes it when a later
step (script rendering) fails after both credentials exist.

Nothing is retried or cached. One successful issue() == one key allocation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from core.errors import ProvisioningError
from credentials.tailscale import JoinKey
from registry.models import DeviceRecord

logger = logging.getLogger("fleetprov.credentials")


class TokenAuthority(Protocol):
    def issue(self, device_id: str, claims: dict) -> str: ...


class JoinKeyAuthority(Protocol):
    def create_join_key(self, serial: str) -> JoinKey: ...

    def delete_key(self, key_id: str) -> None: ...


@dataclass(frozen=True)
class CredentialBundle:
    """Transient credential pair. Never persisted, never logged."""

    auth_token: str
    vpn_join_key: str
    join_key_id: Optional[str] = None

    def __repr__(self) -> str:
        return f"CredentialBundle(join_key_id={self.join_key_id!r})"


class CredentialIssuer:
    def __init__(self, tokens: TokenAuthority, overlay: JoinKeyAuthority) -> None:
        self._tokens = tokens
        self._overlay = overlay

    def issue(self, record: DeviceRecord, instance_uuid: str) -> CredentialBundle:
        """Issue a fresh auth token and join key for one script instance.

        Raises ConfigError or UpstreamError; nothing is retried.
        """
        auth_token = self._tokens.issue(
            record.id,
            {
                "serial": record.serial,
                "provisioningInstanceUuid": instance_uuid,
                "deviceId": record.id,
            },
        )
        join_key = self._overlay.create_join_key(record.serial)
        logger.info("Credentials issued for device %s (instance %s)", record.id, instance_uuid)
        return CredentialBundle(auth_token=auth_token, vpn_join_key=join_key.key, join_key_id=join_key.key_id)

    def revoke(self, bundle: CredentialBundle) -> bool:
        """Best-effort deletion of the join key. Never raises; returns success."""
        if not bundle.join_key_id:
            logger.warning("Cannot revoke join key: upstream returned no key id (expires on its own)")
            return False
        try:
            self._overlay.delete_key(bundle.join_key_id)
        except ProvisioningError as e:
            logger.error("Join key %s could not be revoked: %s (%s)", bundle.join_key_id, e.message, e.detail)
            return False
        return True
