"""Tests for the in-process request and event registries."""

import pytest

from codeforge.services.request_registry import (
    EVENT_TTL_SECONDS,
    REQUEST_TTL_SECONDS,
    InboundEventRegistry,
    RequestRegistry,
    get_event_registry,
    get_request_registry,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return RequestRegistry(clock=clock)


@pytest.mark.unit
class TestRequestRegistry:
    """Duplicate rejection and per-request state."""

    def test_register_finalize_register_scenario(self, registry):
        """A finalized request is still rejected inside the TTL."""
        assert registry.register("r1") is not None
        assert registry.register("r1") is None

        registry.finalize("r1")

        assert registry.register("r1") is None

    def test_register_accepted_again_after_ttl(self, registry, clock):
        """After the TTL a finalized request id can be registered again."""
        registry.register("r1")
        registry.finalize("r1")

        clock.advance(REQUEST_TTL_SECONDS + 1)

        assert registry.register("r1") is not None

    def test_unfinalized_entry_expires_by_age(self, registry, clock):
        """The duplicate window is measured from registration, finalized or not."""
        registry.register("r1")
        clock.advance(REQUEST_TTL_SECONDS)

        assert registry.register("r1") is not None

    def test_sweep_removes_only_old_finalized_entries(self, registry, clock):
        """Sweeping keeps in-flight entries and recent finalized ones."""
        registry.register("old-final")
        registry.register("old-open")
        registry.finalize("old-final")
        clock.advance(REQUEST_TTL_SECONDS + 5)
        registry.register("fresh")

        assert registry.get("old-final") is None
        assert registry.get("old-open") is not None
        assert registry.size() == 2

    def test_finalize_is_idempotent(self, registry):
        """Finalizing twice looks the same as finalizing once."""
        registry.register("r1")
        registry.finalize("r1")
        once = (registry.is_finalized("r1"), registry.has_final_response("r1"), registry.size())

        registry.finalize("r1")
        registry.finalize("r1")

        assert (registry.is_finalized("r1"), registry.has_final_response("r1"), registry.size()) == once

    def test_unknown_ids_are_total(self, registry):
        """Reads of unknown ids are falsy and writes are no-ops."""
        registry.finalize("ghost")
        registry.set_final_response_sent("ghost")
        registry.set_progress_message_id("ghost", "msg-1")

        assert registry.is_finalized("ghost") is False
        assert registry.has_final_response("ghost") is False
        assert registry.get("ghost") is None
        assert registry.size() == 0

    def test_final_response_flag(self, registry):
        """has_final_response flips once set_final_response_sent is called."""
        registry.register("r1")
        assert registry.has_final_response("r1") is False

        registry.set_final_response_sent("r1")

        assert registry.has_final_response("r1") is True
        assert registry.is_finalized("r1") is False

    def test_progress_message_lookup_by_job(self, registry):
        """The progress handle can be found through its job id."""
        registry.register("r1")
        registry.register("r2")
        registry.set_progress_message_id("r1", "msg-1", job_id="job-a")
        registry.set_progress_message_id("r2", "msg-2")

        assert registry.get_progress_message_for_job("job-a") == "msg-1"
        assert registry.get_progress_message_for_job("job-b") is None

    def test_progress_message_last_writer_wins(self, registry):
        """A second assignment replaces the stored handle."""
        registry.register("r1")
        registry.set_progress_message_id("r1", "msg-1", job_id="job-a")
        registry.set_progress_message_id("r1", "msg-2")

        assert registry.get("r1").progress_message_id == "msg-2"
        assert registry.get("r1").job_id == "job-a"

    def test_clear(self, registry):
        registry.register("r1")
        registry.clear()
        assert registry.size() == 0


@pytest.mark.unit
class TestInboundEventRegistry:
    """Short-lived event suppression."""

    def test_key_defaults_to_dm(self):
        """Events without a source context are keyed as direct messages."""
        assert InboundEventRegistry.make_key(None, "c1", "e1") == "dm:c1:e1"
        assert InboundEventRegistry.make_key("g1", "c1", "e1") == "g1:c1:e1"

    def test_check_and_mark(self, clock):
        """The first sighting passes, the redelivery does not."""
        events = InboundEventRegistry(clock=clock)

        assert events.check_and_mark("g1", "c1", "e1") is True
        assert events.check_and_mark("g1", "c1", "e1") is False
        assert events.check_and_mark("g2", "c1", "e1") is True

    def test_seen_events_expire(self, clock):
        """Seen keys are forgotten after the event TTL."""
        events = InboundEventRegistry(clock=clock)
        events.mark_seen(None, "c1", "e1")

        clock.advance(EVENT_TTL_SECONDS + 1)

        assert events.has_seen(None, "c1", "e1") is False
        assert events.size() == 0

    def test_independent_of_request_registry(self, clock):
        """Clearing one registry never touches the other."""
        events = InboundEventRegistry(clock=clock)
        requests = RequestRegistry(clock=clock)
        events.mark_seen(None, "c1", "e1")
        requests.register("r1")

        events.clear()

        assert requests.size() == 1


@pytest.mark.unit
def test_registry_singletons():
    """Getters return one shared instance each."""
    assert get_request_registry() is get_request_registry()
    assert get_event_registry() is get_event_registry()
    assert get_request_registry() is not get_event_registry()
