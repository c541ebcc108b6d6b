"""Tests for step normalization and function-call routing."""

import asyncio

import pytest

from verify_shared.schemas import CallStatus, FunctionCallEvent

from verify_api.errors import SessionNotFoundError
from verify_api.finalizer import SessionFinalizer
from verify_api.step_router import FunctionCallRouter, normalize_step

from conftest import FIXED_NOW, TODAY, RecordingConnector, make_function_call


def event(call_id: str, function_name: str, **parameters) -> FunctionCallEvent:
    return FunctionCallEvent.model_validate(make_function_call(call_id, function_name, **parameters))


# =============================================================================
# Normalization
# =============================================================================


class TestNormalizeStep:
    """Each step maps to the documented normalized fields."""

    def test_record_gatekeeper(self):
        assert normalize_step("record_gatekeeper", {"full_name": "Jane Doe"}, TODAY) == {
            "gatekeeper_name": "Jane Doe"
        }

    def test_address_confirmed(self):
        assert normalize_step("verify_address", {"confirmed": True}, TODAY) == {
            "address_verified": "Yes"
        }

    def test_address_corrected(self):
        result = normalize_step(
            "verify_address",
            {"confirmed": False, "corrected_address": "1 Main St, Springfield, IL 62701"},
            TODAY,
        )
        assert result == {
            "physical_address": "1 Main St, Springfield, IL 62701",
            "address_verified": "Updated",
        }

    def test_address_neither(self):
        assert normalize_step("verify_address", {"confirmed": False}, TODAY) == {}

    def test_email_confirmed(self):
        assert normalize_step("verify_email", {"confirmed": "true"}, TODAY) == {
            "email_verified": "Yes"
        }

    def test_email_corrected(self):
        assert normalize_step(
            "verify_email", {"confirmed": False, "corrected_email": "it@acme.com"}, TODAY
        ) == {"email_address": "it@acme.com", "email_verified": "Updated"}

    def test_dm_confirmed_and_employed(self):
        assert normalize_step(
            "verify_dm", {"confirmed": True, "still_employed": True}, TODAY
        ) == {"dm_verified": "Yes"}

    def test_dm_corrected_with_notes(self):
        result = normalize_step(
            "verify_dm",
            {"confirmed": False, "still_employed": True, "corrected_name": "Bob Ray", "notes": "new hire"},
            TODAY,
        )
        assert result == {"dm_name": "Bob Ray", "dm_verified": "Updated", "dm_notes": "new hire"}

    def test_dm_left(self):
        result = normalize_step(
            "verify_dm", {"confirmed": False, "still_employed": False, "notes": "retired"}, TODAY
        )
        assert result == {"dm_verified": "No longer employed", "dm_notes": "retired"}

    def test_direct_number_provided(self):
        assert normalize_step(
            "collect_direct_number", {"provided": True, "phone_number": "+15551234567"}, TODAY
        ) == {"direct_number": "+15551234567"}

    def test_direct_number_refused(self):
        assert normalize_step(
            "collect_direct_number", {"provided": False, "notes": "policy"}, TODAY
        ) == {"direct_number": "Not provided", "direct_number_notes": "policy"}

    def test_complete_call_success(self):
        assert normalize_step("complete_call", {"outcome": "success", "notes": "ok"}, TODAY) == {
            "verification_status": "verified",
            "call_outcome": "success",
            "call_notes": "ok",
            "last_call_date": "2026-03-14",
        }

    def test_end_call_failure(self):
        result = normalize_step("end_call", {"outcome": "declined"}, TODAY)
        assert result["verification_status"] == "failed"
        assert result["call_outcome"] == "declined"
        assert result["call_notes"] == ""

    def test_unknown_step_raises(self):
        with pytest.raises(ValueError):
            normalize_step("transfer_call", {}, TODAY)


# =============================================================================
# Routing
# =============================================================================


class TestFunctionCallRouter:
    """Tests for applying events to sessions and backends."""

    @pytest.mark.asyncio
    async def test_end_to_end_sheet_flow(
        self, router, registry, connectors, rooms, sleeper, sheet_target
    ):
        """Gatekeeper then completion: two sheet writes, room released, eviction armed."""
        registry.create("c1", "verify-c1", sheet_target)

        await router.handle(event("c1", "record_gatekeeper", full_name="Jane Doe"))
        result = await router.handle(event("c1", "complete_call", outcome="success", notes="ok"))

        assert connectors["sheet"].updates == [
            (sheet_target, {"gatekeeper_name": "Jane Doe"}),
            (
                sheet_target,
                {
                    "verification_status": "verified",
                    "call_outcome": "success",
                    "call_notes": "ok",
                    "last_call_date": FIXED_NOW.date().isoformat(),
                },
            ),
        ]
        assert connectors["crm"].updates == []
        assert result.finalized is True
        assert registry.get("c1").status == CallStatus.COMPLETED
        assert rooms.deleted == ["verify-c1"]

        await asyncio.sleep(0)
        assert sleeper.delays == [60]
        sleeper.release()
        await registry.pending_eviction("c1").task
        assert "c1" not in registry

    @pytest.mark.asyncio
    async def test_crm_target_goes_to_crm_connector(self, router, registry, connectors, crm_target):
        registry.create("c1", "verify-c1", crm_target)
        await router.handle(event("c1", "verify_email", confirmed=True))
        assert connectors["crm"].updates == [(crm_target, {"email_verified": "Yes"})]
        assert connectors["sheet"].updates == []

    @pytest.mark.asyncio
    async def test_unknown_function_is_ignored(self, router, registry, connectors, sheet_target):
        registry.create("c1", "verify-c1", sheet_target)
        result = await router.handle(event("c1", "transfer_call", to="sales"))
        assert result.handled is False
        assert registry.get("c1").status == CallStatus.INITIATING
        assert registry.get("c1").collected_data == {}
        assert connectors["sheet"].updates == []

    @pytest.mark.asyncio
    async def test_unknown_call_raises(self, router, connectors):
        with pytest.raises(SessionNotFoundError):
            await router.handle(event("ghost", "verify_email", confirmed=True))
        assert connectors["sheet"].updates == []

    @pytest.mark.asyncio
    async def test_missing_call_id_raises(self, router):
        bare = FunctionCallEvent.model_validate(
            {"type": "function_call", "functionName": "verify_email", "parameters": {}}
        )
        with pytest.raises(SessionNotFoundError):
            await router.handle(bare)

    @pytest.mark.asyncio
    async def test_missing_connector_leaves_session_untouched(self, registry, finalizer, sheet_target):
        router = FunctionCallRouter(registry, {"crm": RecordingConnector()}, finalizer)
        registry.create("c1", "verify-c1", sheet_target)
        with pytest.raises(SessionNotFoundError):
            await router.handle(event("c1", "verify_email", confirmed=True))
        assert registry.get("c1").status == CallStatus.INITIATING

    @pytest.mark.asyncio
    async def test_empty_update_skips_backend(self, router, registry, connectors, sheet_target):
        registry.create("c1", "verify-c1", sheet_target)
        result = await router.handle(event("c1", "verify_address", confirmed=False))
        assert result.handled is True
        assert connectors["sheet"].updates == []
        assert registry.get("c1").status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_backend_failure_keeps_session_state(self, registry, rooms, sheet_target):
        failing = {"sheet": RecordingConnector("sheet", fail=True)}
        finalizer = SessionFinalizer(registry, failing, rooms=rooms)
        router = FunctionCallRouter(registry, failing, finalizer)
        registry.create("c1", "verify-c1", sheet_target)

        result = await router.handle(event("c1", "record_gatekeeper", full_name="Jane"))

        assert result.backend_error is not None
        session = registry.get("c1")
        assert session.status == CallStatus.IN_PROGRESS
        assert "record_gatekeeper" in session.collected_data

    @pytest.mark.asyncio
    async def test_duplicate_terminal_step_finalizes_once(
        self, router, registry, connectors, rooms, sheet_target
    ):
        """A redelivered complete_call writes again but does not re-finalize."""
        registry.create("c1", "verify-c1", sheet_target)
        first = await router.handle(event("c1", "complete_call", outcome="success"))
        second = await router.handle(event("c1", "complete_call", outcome="success"))

        assert first.finalized is True
        assert second.finalized is False
        assert len(connectors["sheet"].updates) == 2
        assert len(connectors["sheet"].logs) == 1
        assert rooms.deleted == ["verify-c1"]
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_repeated_step_keeps_one_entry(self, router, registry, connectors, sheet_target):
        """The same step delivered twice leaves collected_data as after the first."""
        registry.create("c1", "verify-c1", sheet_target)
        await router.handle(event("c1", "verify_email", confirmed=True))
        after_first = {k: v.parameters for k, v in registry.get("c1").collected_data.items()}

        await router.handle(event("c1", "verify_email", confirmed=True))

        session = registry.get("c1")
        assert {k: v.parameters for k, v in session.collected_data.items()} == after_first
        assert list(session.collected_data) == ["verify_email"]
        assert session.status == CallStatus.IN_PROGRESS
        assert connectors["sheet"].updates[0] == connectors["sheet"].updates[1]

    @pytest.mark.asyncio
    async def test_unexpected_backend_error_still_finalizes(self, registry, rooms, sheet_target):
        """A terminal step whose write crashes is still finalized and evicted."""
        crashing = {"sheet": RecordingConnector("sheet", error=RuntimeError("socket closed"))}
        finalizer = SessionFinalizer(registry, crashing, rooms=rooms)
        router = FunctionCallRouter(registry, crashing, finalizer)
        registry.create("c1", "verify-c1", sheet_target)

        with pytest.raises(RuntimeError):
            await router.handle(event("c1", "complete_call", outcome="success"))

        assert registry.get("c1").status == CallStatus.COMPLETED
        assert registry.pending_eviction("c1") is not None
        assert len(crashing["sheet"].logs) == 1
        assert rooms.deleted == ["verify-c1"]
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_calls_leave_no_locks(self, router, registry):
        for i in range(100):
            with pytest.raises(SessionNotFoundError):
                await router.handle(event(f"ghost-{i}", "verify_email", confirmed=True))

        assert registry._locks == {}
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_step_after_end_does_not_change_status(self, router, registry, sheet_target):
        registry.create("c1", "verify-c1", sheet_target)
        await router.handle(event("c1", "end_call", outcome="declined"))
        await router.handle(event("c1", "verify_email", confirmed=True))
        session = registry.get("c1")
        assert session.status == CallStatus.ENDED_EARLY
        assert "verify_email" not in session.collected_data
        await registry.shutdown()


class TestConcurrency:
    """Events for one call never interleave; different calls proceed in parallel."""

    @pytest.mark.asyncio
    async def test_same_call_steps_apply_in_arrival_order(self, registry, finalizer, sheet_target):
        slow = RecordingConnector("sheet", delay=0.01)
        router = FunctionCallRouter(registry, {"sheet": slow}, finalizer)
        registry.create("c1", "verify-c1", sheet_target)

        await asyncio.gather(
            router.handle(event("c1", "record_gatekeeper", full_name="Jane")),
            router.handle(event("c1", "verify_email", confirmed=True)),
            router.handle(event("c1", "verify_address", confirmed=True)),
        )

        assert [fields for _, fields in slow.updates] == [
            {"gatekeeper_name": "Jane"},
            {"email_verified": "Yes"},
            {"address_verified": "Yes"},
        ]
        assert list(registry.get("c1").collected_data) == [
            "record_gatekeeper",
            "verify_email",
            "verify_address",
        ]

    @pytest.mark.asyncio
    async def test_concurrent_terminal_and_step(self, registry, finalizer, rooms, sheet_target):
        """A step racing a completion is either recorded before it or ignored after it."""
        slow = RecordingConnector("sheet", delay=0.01)
        router = FunctionCallRouter(registry, {"sheet": slow}, finalizer)
        registry.create("c1", "verify-c1", sheet_target)

        await asyncio.gather(
            router.handle(event("c1", "complete_call", outcome="success")),
            router.handle(event("c1", "verify_email", confirmed=True)),
        )

        session = registry.get("c1")
        assert session.status == CallStatus.COMPLETED
        assert "verify_email" not in session.collected_data
        assert rooms.deleted == ["verify-c1"]
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_different_calls_overlap(self, registry, finalizer, sheet_target):
        slow = RecordingConnector("sheet", delay=0.05)
        router = FunctionCallRouter(registry, {"sheet": slow}, finalizer)
        registry.create("c1", "verify-c1", sheet_target)
        registry.create("c2", "verify-c2", sheet_target)

        loop = asyncio.get_running_loop()
        started = loop.time()
        await asyncio.gather(
            router.handle(event("c1", "record_gatekeeper", full_name="A")),
            router.handle(event("c2", "record_gatekeeper", full_name="B")),
        )
        assert loop.time() - started < 0.09
        assert len(slow.updates) == 2
