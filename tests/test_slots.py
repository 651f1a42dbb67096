import threading
import pytest
from staged_rollout.models import Health, SlotName
from staged_rollout.slots import SlotManager
from staged_rollout.errors import SlotBusy, SwapPrecondition


class TestStaging:
    """Binding builds to the staging slot."""

    def test_stage_binds_artifact_and_leaves_production(self):
        slots = SlotManager("prod-eu", production_version="v1")
        handle = slots.stage("v2", deployment_id="d1")

        assert handle.version == "v2"
        assert handle.environment == "prod-eu"
        assert slots.staging.version == "v2"
        assert slots.staging.deployment_id == "d1"
        assert slots.staging.health == Health.UNKNOWN
        assert slots.staging.name == SlotName.STAGING
        assert slots.production.version == "v1"
        assert slots.production.name == SlotName.PRODUCTION

    def test_stage_while_unfinished_deployment_raises_slot_busy(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")

        with pytest.raises(SlotBusy):
            slots.stage("v3", deployment_id="d2")
        # Neither slot changed
        assert slots.staging.version == "v2"
        assert slots.staging.deployment_id == "d1"
        assert slots.production.version == "v1"
        assert slots.audit_log == ()

    def test_stage_overwrites_revert_candidate_left_by_swap(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")
        slots.swap(deployment_id="d1")
        assert slots.staging.version == "v1"  # previous build kept for instant revert

        slots.stage("v3", deployment_id="d2")
        assert slots.staging.version == "v3"
        assert slots.production.version == "v2"

    def test_concurrent_stage_calls_only_one_wins(self):
        slots = SlotManager("prod-eu", production_version="v1")
        results = []
        barrier = threading.Barrier(8)

        def worker(n):
            barrier.wait()
            try:
                slots.stage(f"v{n}", deployment_id=f"d{n}")
                results.append("ok")
            except SlotBusy:
                results.append("busy")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("busy") == 7


class TestSwap:
    """Promotion by flipping the routing pointer."""

    def test_swap_exchanges_production_and_staging(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")
        slots.mark_health(Health.HEALTHY)
        live_before = slots.live_cell

        result = slots.swap(actor="ci", deployment_id="d1")
        assert result.swapped is True
        assert result.previous_version == "v1"
        assert result.new_version == "v2"
        assert slots.live_cell != live_before
        assert slots.production.version == "v2"
        assert slots.production.health == Health.HEALTHY
        assert slots.staging.version == "v1"
        assert slots.staging.deployment_id is None

    def test_swap_with_empty_staging_raises(self):
        slots = SlotManager("prod-eu", production_version="v1")
        with pytest.raises(SwapPrecondition, match="empty"):
            slots.swap()
        assert slots.production.version == "v1"

    def test_swap_with_unhealthy_staging_raises_and_keeps_staging(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")
        slots.mark_health(Health.FAILED)

        with pytest.raises(SwapPrecondition, match="unhealthy"):
            slots.swap(deployment_id="d1")
        assert slots.production.version == "v1"
        assert slots.staging.version == "v2"
        assert slots.staging.deployment_id == "d1"
        assert slots.audit_log == ()

    def test_repeated_swap_for_same_deployment_is_noop(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")
        slots.swap(deployment_id="d1")

        again = slots.swap(deployment_id="d1")
        assert again.swapped is False
        assert slots.production.version == "v2"
        assert slots.staging.version == "v1"
        assert len(slots.audit_log) == 1

    def test_repeated_swap_without_id_does_not_revert(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")
        first = slots.swap()

        again = slots.swap()
        assert first.swapped is True
        assert again.swapped is False
        assert again.new_version == "v2"
        assert slots.production.version == "v2"
        assert slots.staging.version == "v1"
        assert [r.action for r in slots.audit_log] == ["swap"]

    def test_demoted_build_survives_serialization_as_non_promotable(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")
        slots.swap()

        restored = SlotManager.from_dict(slots.to_dict())
        assert restored.staging.retired is True
        assert restored.swap().swapped is False
        assert restored.production.version == "v2"


class TestDiscardAndAudit:
    """Discard and the append-only audit log."""

    def test_discard_clears_staging_only(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")
        slots.discard(actor="ci")

        assert slots.staging.empty
        assert slots.staging.deployment_id is None
        assert slots.production.version == "v1"
        record = slots.audit_log[-1]
        assert record.action == "discard"
        assert record.previous_version == "v2"
        assert record.new_version is None
        assert record.actor == "ci"
        assert record.deployment_id == "d1"

    def test_discard_empty_staging_is_noop(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.discard()
        slots.discard()
        assert slots.staging.empty
        assert slots.audit_log == ()

    def test_audit_log_is_append_only(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")
        slots.swap(deployment_id="d1")
        first = slots.audit_log
        slots.stage("v3", deployment_id="d2")
        slots.discard()

        log = slots.audit_log
        assert isinstance(log, tuple)
        assert log[:1] == first
        assert [r.action for r in log] == ["swap", "discard"]
        assert log[0].timestamp <= log[1].timestamp

    def test_mark_health_on_empty_staging_is_ignored(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.mark_health(Health.HEALTHY)
        assert slots.staging.health == Health.UNKNOWN

    def test_state_survives_serialization(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")
        slots.swap(actor="ci", deployment_id="d1")
        slots.stage("v3", deployment_id="d2")

        restored = SlotManager.from_dict(slots.to_dict())
        assert restored.production.version == "v2"
        assert restored.staging.version == "v3"
        assert restored.staging.deployment_id == "d2"
        assert restored.live_cell == slots.live_cell
        assert restored.audit_log == slots.audit_log
        with pytest.raises(SlotBusy):
            restored.stage("v4", deployment_id="d3")
