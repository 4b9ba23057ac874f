"""
tests/test_registry_store.py -- Unit tests for DeviceRegistry.

Covers:
  - registration: create, idempotent reset, sanitization, empty/oversized serials
  - polling: check_status touches last_seen without bumping version
  - transition table: illegal edges raise IllegalTransition
  - claim: requires approval, loses on a stale version, blocks while fresh,
    reclaimable once the claim TTL has passed
  - release: restores the pre-claim state, never undoes a newer claim
  - approval revoke sends claimed devices back to awaiting_approval
  - status reports: provisioning_complete transition, state merge, audit fields
  - concurrent claims from many threads: exactly one wins
"""

from __future__ import annotations

import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest

from core.errors import ConcurrentUpdate, IllegalTransition, NotFoundError, ValidationError
from core.identity import hash_serial
from registry.models import ProvisioningStatus
from registry.store import DeviceRegistry, check_transition

S = ProvisioningStatus


def _approved(registry: DeviceRegistry, serial: str = "SN-001"):
    result = registry.register(serial)
    registry.set_approval(result.device_id, True)
    return registry.get(result.device_id)


class TestRegister:
    def test_new_serial_creates_record(self, registry: DeviceRegistry) -> None:
        result = registry.register("SN-001")
        assert result.created is True
        assert result.status == S.AWAITING_APPROVAL
        assert len(result.device_id) == 20

        record = registry.get(result.device_id)
        assert record is not None
        assert record.serial == "SN-001"
        assert record.hash == hash_serial("SN-001")
        assert record.approved_for_provisioning is False
        assert record.provisioning_status == S.AWAITING_APPROVAL
        assert record.friendly_name == "Device SN-001"
        assert record.state == {"connectivity_status": "unknown"}
        assert record.created_at

    def test_reregistration_resets_same_record(self, registry: DeviceRegistry) -> None:
        first = registry.register("SN-001")
        registry.set_approval(first.device_id, True)

        second = registry.register("SN-001")
        assert second.created is False
        assert second.device_id == first.device_id

        record = registry.get(first.device_id)
        assert record.approved_for_provisioning is False
        assert record.provisioning_status == S.AWAITING_APPROVAL
        assert len(registry.list_devices()) == 1

    def test_reregistration_after_completion(self, registry: DeviceRegistry) -> None:
        record = _approved(registry)
        claimed = registry.claim_provisioning(record, str(uuid.uuid4()), "10.0.0.1", 60)
        registry.record_status_report(claimed.id, "provisioning_complete")

        result = registry.register("SN-001")
        assert result.created is False
        after = registry.get(record.id)
        assert after.provisioning_status == S.AWAITING_APPROVAL
        assert after.last_provision_request is None

    def test_serial_is_sanitized_before_matching(self, registry: DeviceRegistry) -> None:
        first = registry.register("  SN-002\r\n")
        second = registry.register("SN-002")
        assert second.device_id == first.device_id
        assert registry.get(first.device_id).serial == "SN-002"

    @pytest.mark.parametrize("serial", ["", "   ", "\x00\x01"])
    def test_empty_serial_rejected(self, registry: DeviceRegistry, serial: str) -> None:
        with pytest.raises(ValidationError):
            registry.register(serial)

    def test_oversized_serial_rejected(self, registry: DeviceRegistry) -> None:
        with pytest.raises(ValidationError):
            registry.register("S" * 256)


class TestLookup:
    def test_get_by_hash(self, registry: DeviceRegistry) -> None:
        result = registry.register("SN-001")
        record = registry.get_by_hash(hash_serial("SN-001"))
        assert record is not None
        assert record.id == result.device_id

    def test_unknown_hash(self, registry: DeviceRegistry) -> None:
        assert registry.get_by_hash("0" * 64) is None

    def test_list_filtered_by_status(self, registry: DeviceRegistry) -> None:
        registry.register("SN-001")
        other = registry.register("SN-002")
        registry.mark_approval_requested(registry.get(other.device_id))
        pending = registry.list_devices(S.APPROVAL_PENDING_REQUEST_RECEIVED)
        assert [r.id for r in pending] == [other.device_id]


class TestCheckStatus:
    def test_unknown_device(self, registry: DeviceRegistry) -> None:
        with pytest.raises(NotFoundError):
            registry.check_status("does-not-exist")

    def test_touches_last_seen_without_version_bump(self, registry: DeviceRegistry, clock) -> None:
        result = registry.register("SN-001")
        before = registry.get(result.device_id)
        clock.advance(30)
        after = registry.check_status(result.device_id)
        assert after.last_seen > before.last_seen
        assert after.version == before.version


class TestTransitions:
    @pytest.mark.parametrize(
        "from_status, to_status",
        [
            (None, S.SCRIPT_GENERATED),
            (S.AWAITING_APPROVAL, S.PROVISIONING_COMPLETE),
            (S.APPROVAL_PENDING_REQUEST_RECEIVED, S.PROVISIONING_COMPLETE),
            (S.PROVISIONING_COMPLETE, S.SCRIPT_GENERATED),
            (S.PROVISIONING_COMPLETE, S.APPROVAL_PENDING_REQUEST_RECEIVED),
        ],
    )
    def test_illegal(self, from_status, to_status) -> None:
        with pytest.raises(IllegalTransition):
            check_transition(from_status, to_status)

    @pytest.mark.parametrize(
        "from_status, to_status",
        [
            (None, S.AWAITING_APPROVAL),
            (S.AWAITING_APPROVAL, S.SCRIPT_GENERATED),
            (S.SCRIPT_GENERATED, S.PROVISIONING_COMPLETE),
            (S.SCRIPT_GENERATED, S.APPROVAL_PENDING_REQUEST_RECEIVED),
            (S.PROVISIONING_COMPLETE, S.AWAITING_APPROVAL),
        ],
    )
    def test_legal(self, from_status, to_status) -> None:
        check_transition(from_status, to_status)

    def test_mark_approval_requested(self, registry: DeviceRegistry) -> None:
        result = registry.register("SN-001")
        registry.mark_approval_requested(registry.get(result.device_id))
        assert registry.get(result.device_id).provisioning_status == S.APPROVAL_PENDING_REQUEST_RECEIVED


class TestClaim:
    def test_unapproved_cannot_be_claimed(self, registry: DeviceRegistry) -> None:
        result = registry.register("SN-001")
        record = registry.get(result.device_id)
        assert registry.claim_provisioning(record, str(uuid.uuid4()), "10.0.0.1", 60) is None
        assert registry.get(record.id).provisioning_status == S.AWAITING_APPROVAL

    def test_claim_moves_to_script_generated(self, registry: DeviceRegistry) -> None:
        record = _approved(registry)
        instance = str(uuid.uuid4())
        claimed = registry.claim_provisioning(record, instance, "10.0.0.1", 60)
        assert claimed is not None
        assert claimed.version == record.version + 1

        stored = registry.get(record.id)
        assert stored.provisioning_status == S.SCRIPT_GENERATED
        assert stored.provisioning_instance_uuid == instance
        assert stored.last_provision_ip == "10.0.0.1"
        assert stored.last_provision_request is not None
        assert stored.version == claimed.version

    def test_stale_version_loses(self, registry: DeviceRegistry) -> None:
        record = _approved(registry)
        stale_copy = registry.get(record.id)
        assert registry.claim_provisioning(record, str(uuid.uuid4()), "10.0.0.1", 60) is not None
        assert registry.claim_provisioning(stale_copy, str(uuid.uuid4()), "10.0.0.2", 60) is None

    def test_fresh_claim_blocks_reclaim(self, registry: DeviceRegistry, clock) -> None:
        record = _approved(registry)
        first = str(uuid.uuid4())
        registry.claim_provisioning(record, first, "10.0.0.1", 60)

        clock.advance(10)
        current = registry.get(record.id)
        assert registry.claim_provisioning(current, str(uuid.uuid4()), "10.0.0.1", 60) is None
        assert registry.get(record.id).provisioning_instance_uuid == first

    def test_reclaim_after_ttl(self, registry: DeviceRegistry, clock) -> None:
        record = _approved(registry)
        registry.claim_provisioning(record, str(uuid.uuid4()), "10.0.0.1", 60)

        clock.advance(61)
        current = registry.get(record.id)
        second = str(uuid.uuid4())
        assert registry.claim_provisioning(current, second, "10.0.0.1", 60) is not None
        assert registry.get(record.id).provisioning_instance_uuid == second

    def test_revoked_between_read_and_claim(self, registry: DeviceRegistry) -> None:
        record = _approved(registry)
        registry.set_approval(record.id, False)
        assert registry.claim_provisioning(record, str(uuid.uuid4()), "10.0.0.1", 60) is None

    def test_concurrent_claims_single_winner(self, tmp_path) -> None:
        store = DeviceRegistry(f"sqlite:///{tmp_path / 'claims.db'}")
        try:
            record = _approved(store)
            instances = [str(uuid.uuid4()) for _ in range(8)]
            with ThreadPoolExecutor(max_workers=8) as pool:
                results = list(
                    pool.map(lambda i: store.claim_provisioning(record, i, "10.0.0.1", 60), instances)
                )
            winners = [r for r in results if r is not None]
            assert len(winners) == 1
            assert store.get(record.id).provisioning_instance_uuid == winners[0].provisioning_instance_uuid
        finally:
            store.close()


class TestRelease:
    def test_release_restores_previous_state(self, registry: DeviceRegistry) -> None:
        record = registry.register("SN-001")
        registry.mark_approval_requested(registry.get(record.device_id))
        registry.set_approval(record.device_id, True)
        before = registry.get(record.device_id)

        claimed = registry.claim_provisioning(before, str(uuid.uuid4()), "10.0.0.1", 60)
        assert registry.release_claim(claimed, before) is True

        after = registry.get(record.device_id)
        assert after.provisioning_status == S.APPROVAL_PENDING_REQUEST_RECEIVED
        assert after.provisioning_instance_uuid is None
        assert after.last_provision_request is None

    def test_release_never_undoes_newer_claim(self, registry: DeviceRegistry, clock) -> None:
        before = _approved(registry)
        old_claim = registry.claim_provisioning(before, str(uuid.uuid4()), "10.0.0.1", 60)

        clock.advance(61)
        newer = str(uuid.uuid4())
        registry.claim_provisioning(registry.get(before.id), newer, "10.0.0.1", 60)

        assert registry.release_claim(old_claim, before) is False
        stored = registry.get(before.id)
        assert stored.provisioning_status == S.SCRIPT_GENERATED
        assert stored.provisioning_instance_uuid == newer


class TestApproval:
    def test_unknown_device(self, registry: DeviceRegistry) -> None:
        with pytest.raises(NotFoundError):
            registry.set_approval("nope", True)

    def test_revoke_after_claim_returns_to_queue(self, registry: DeviceRegistry) -> None:
        record = _approved(registry)
        registry.claim_provisioning(record, str(uuid.uuid4()), "10.0.0.1", 60)

        revoked = registry.set_approval(record.id, False)
        assert revoked.approved_for_provisioning is False
        assert revoked.provisioning_status == S.AWAITING_APPROVAL

    def test_approve_keeps_status(self, registry: DeviceRegistry) -> None:
        result = registry.register("SN-001")
        registry.mark_approval_requested(registry.get(result.device_id))
        approved = registry.set_approval(result.device_id, True)
        assert approved.approved_for_provisioning is True
        assert approved.provisioning_status == S.APPROVAL_PENDING_REQUEST_RECEIVED


class TestStatusReport:
    def test_completion(self, registry: DeviceRegistry) -> None:
        record = _approved(registry)
        registry.claim_provisioning(record, str(uuid.uuid4()), "10.0.0.1", 60)

        done = registry.record_status_report(record.id, "provisioning_complete", {"firmware": "1.2"})
        assert done.provisioning_status == S.PROVISIONING_COMPLETE
        assert done.commissioned is True
        assert done.state["service_status"] == "starting"
        assert done.state["connectivity_status"] == "connecting"
        assert done.state["firmware"] == "1.2"
        assert done.last_reported_status == "provisioning_complete"

    def test_completion_without_script_is_illegal(self, registry: DeviceRegistry) -> None:
        result = registry.register("SN-001")
        with pytest.raises(IllegalTransition):
            registry.record_status_report(result.device_id, "provisioning_complete")

    def test_other_status_only_audited(self, registry: DeviceRegistry) -> None:
        result = registry.register("SN-001")
        updated = registry.record_status_report(
            result.device_id, "service_running", {"service_status": "running", "lastUpdate": "forged"}
        )
        assert updated.provisioning_status == S.AWAITING_APPROVAL
        assert updated.last_reported_status == "service_running"
        assert updated.state["service_status"] == "running"
        assert updated.state["lastUpdate"] != "forged"

    def test_unknown_device(self, registry: DeviceRegistry) -> None:
        with pytest.raises(NotFoundError):
            registry.record_status_report("nope", "provisioning_complete")

    def test_completion_losing_every_write_is_concurrent_update(self, registry: DeviceRegistry, monkeypatch) -> None:
        record = _approved(registry)
        registry.claim_provisioning(record, str(uuid.uuid4()), "10.0.0.1", 60)
        monkeypatch.setattr(registry, "_transition", lambda *args, **kwargs: False)

        with pytest.raises(ConcurrentUpdate) as exc_info:
            registry.record_status_report(record.id, "provisioning_complete")
        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "concurrent_update"
        assert registry.get(record.id).provisioning_status == S.SCRIPT_GENERATED
