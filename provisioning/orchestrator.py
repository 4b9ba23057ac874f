"""
provisioning/orchestrator.py -- Drives registration, polling, and script issuance.

All collaborators are constructor-injected; nothing here reaches for a global
client. The API lifespan wires the real ones, tests wire fakes.

fetch_provisioning_script() pipeline, each step short-circuiting:

  1. validate hash format                      ValidationError
  2. per-IP rate check                         RateLimited
  3. lookup by hash                            Unauthorized
  4. approval check (flags the request)        Unauthorized
  5. per-device rate check                     RateLimited
     serial usable as hostname / filename      ValidationError
     generator configuration present           ConfigError
  6. atomic claim -> script_generated          RateLimited when lost
  7. issue credentials                         ConfigError / UpstreamError
  8. render script                             ValidationError / ConfigError
  9. return ProvisioningScript

The claim happens before any external call, so a concurrent request for the
same device loses at the database instead of spending a second join key.
Failures in 7 or 8 roll the claim back, so a retried request is not blocked
by a half-finished attempt.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlencode

from core.errors import NotFoundError, RateLimited, Unauthorized, ValidationError
from core.identity import is_safe_identifier, normalize_device_hash
from credentials.issuer import CredentialIssuer
from credentials.tokens import StatusReporter
from provisioning.script import ProvisioningScript, ScriptGenerator
from registry.models import DeviceRecord, ProvisioningStatus, RegistrationResult
from registry.store import DeviceRegistry
from throttle.store import RateLimiter, device_key, ip_key

logger = logging.getLogger("fleetprov.provisioning")


@dataclass(frozen=True)
class DeviceStatusView:
    """What a polling device is told: approved (with a script URL) or its status."""

    status: str
    script_url: Optional[str] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _hash_prefix(device_hash: str) -> str:
    return device_hash[:8]


class ProvisioningOrchestrator:
    def __init__(
        self,
        registry: DeviceRegistry,
        limiter: RateLimiter,
        issuer: CredentialIssuer,
        generator: ScriptGenerator,
        ip_interval_seconds: int = 5,
        device_interval_seconds: int = 60,
        claim_ttl_seconds: Optional[int] = None,
        public_base_url: str = "",
        clock: Callable[[], datetime] = _utc_now,
        new_instance_uuid: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.registry = registry
        self.limiter = limiter
        self.issuer = issuer
        self.generator = generator
        self.ip_interval_seconds = ip_interval_seconds
        self.device_interval_seconds = device_interval_seconds
        # A claim older than this no longer blocks a new one.
        self.claim_ttl_seconds = device_interval_seconds if claim_ttl_seconds is None else claim_ttl_seconds
        self.public_base_url = public_base_url.rstrip("/")
        self._clock = clock
        self._new_instance_uuid = new_instance_uuid

    # ------------------------------------------------------------------
    # Registration and polling
    # ------------------------------------------------------------------

    def register(self, serial: str) -> RegistrationResult:
        return self.registry.register(serial)

    def script_url_for(self, record: DeviceRecord) -> str:
        return f"{self.public_base_url}/provision?{urlencode({'device_hash': record.hash})}"

    def check_status(self, device_id: str) -> DeviceStatusView:
        """Poll by device id. Raises NotFoundError for an unknown id."""
        record = self.registry.check_status(device_id)
        if record.approved_for_provisioning:
            logger.info("Device %s is approved; returning script URL", record.id)
            return DeviceStatusView(status="approved", script_url=self.script_url_for(record))
        return DeviceStatusView(status=record.provisioning_status.value)

    # ------------------------------------------------------------------
    # Script issuance
    # ------------------------------------------------------------------

    def fetch_provisioning_script(self, device_hash: str, source_ip: Optional[str]) -> ProvisioningScript:
        normalized = normalize_device_hash(device_hash)
        if normalized is None:
            raise ValidationError("Invalid device_hash format.", detail="Expected 64 hexadecimal characters.")

        ip_decision = self.limiter.check(ip_key(source_ip), self.ip_interval_seconds)
        if not ip_decision.allowed:
            raise RateLimited("Too many requests from this address.", retry_after=ip_decision.retry_after)

        record = self.registry.get_by_hash(normalized)
        if record is None:
            logger.warning("Script requested for unknown hash %s from %s", _hash_prefix(normalized), source_ip)
            raise Unauthorized("Device is not authorized for provisioning.")

        # Checked before approval: a provisioned device whose approval was
        # revoked has no edge back to approval_pending_request_received.
        if record.provisioning_status == ProvisioningStatus.PROVISIONING_COMPLETE:
            logger.warning("Provisioned device %s requested a new script; re-registration required", record.id)
            raise Unauthorized("Device is already provisioned.", detail="Re-register the device first.")
        if not record.approved_for_provisioning:
            self.registry.mark_approval_requested(record)
            logger.info("Unapproved device %s requested its script; flagged for approval", record.id)
            raise Unauthorized("Device is not authorized for provisioning.", detail="Awaiting approval.")

        device_decision = self.limiter.check(device_key(record.id), self.device_interval_seconds)
        if not device_decision.allowed:
            raise RateLimited("Script already requested recently for this device.", retry_after=device_decision.retry_after)

        if not is_safe_identifier(record.serial):
            logger.warning("Device %s serial %r cannot be used as a hostname", record.id, record.serial)
            raise ValidationError(
                "Serial number cannot be used as a hostname.",
                detail="Only letters, digits, '-' and '_' are allowed.",
            )
        self.generator.check_ready()

        instance_uuid = self._new_instance_uuid()
        claimed = self.registry.claim_provisioning(
            record, instance_uuid, source_ip, claim_ttl_seconds=self.claim_ttl_seconds
        )
        if claimed is None:
            raise RateLimited("Provisioning already in progress for this device.", retry_after=self.device_interval_seconds)

        try:
            credentials = self.issuer.issue(claimed, instance_uuid)
        except Exception:
            logger.exception("Credential issuance failed for device %s; releasing claim", record.id)
            self.registry.release_claim(claimed, record)
            raise

        try:
            script = self.generator.generate(
                claimed,
                credentials,
                instance_uuid,
                generated_at=self._clock().isoformat(timespec="seconds"),
            )
        except Exception:
            logger.error("Script rendering failed for device %s; revoking join key and releasing claim", record.id)
            self.issuer.revoke(credentials)
            self.registry.release_claim(claimed, record)
            raise

        logger.info("Provisioning script issued for device %s (instance %s)", record.id, instance_uuid)
        return script

    # ------------------------------------------------------------------
    # Device status reports
    # ------------------------------------------------------------------

    def report_status(
        self,
        device_id: str,
        provisioning_status: Optional[str],
        state: Optional[dict[str, Any]],
        reporter: StatusReporter,
        instance_uuid: Optional[str] = None,
    ) -> DeviceRecord:
        """Apply a status report from a device.

        A device token is only good for the device and provisioning instance
        it was issued for. A token from an older script names a superseded
        instance uuid and is refused. A report that names an instance uuid in
        its body is held to the same rule, whoever sent it.
        """
        if not reporter.shared and reporter.claims.get("deviceId") != device_id:
            logger.warning("Status report for %s carried a token for another device", device_id)
            raise Unauthorized("Token does not belong to this device.")

        record = self.registry.get(device_id)
        if record is None:
            raise NotFoundError("Device not found.", detail=f"No device with id {device_id[:40]!r}.")

        claimed_instances = [instance_uuid] if instance_uuid else []
        if not reporter.shared:
            claimed_instances.append(reporter.claims.get("provisioningInstanceUuid"))
        for claimed in claimed_instances:
            if not claimed or claimed != record.provisioning_instance_uuid:
                logger.warning("Status report for %s used a superseded provisioning instance", device_id)
                raise Unauthorized("Provisioning instance is no longer current.")

        return self.registry.record_status_report(device_id, provisioning_status, state)
