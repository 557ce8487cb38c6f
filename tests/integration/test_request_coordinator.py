"""Admission flows through registries, lease lock and work execution."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from codeforge.services.request_coordinator import (
    Admission,
    InboundEvent,
    RequestCoordinator,
    is_transient_error,
)
from codeforge.services.request_registry import InboundEventRegistry, RequestRegistry
from codeforge.services.service_base import CompletionError, ParseError, PipelineFailure
from codeforge.utils.distributed_lock import LeaseLock, MemoryLeaseBackend


@pytest.fixture
def lease_backend():
    return MemoryLeaseBackend()


@pytest.fixture
def coordinator(lease_backend):
    return RequestCoordinator(
        request_registry=RequestRegistry(),
        event_registry=InboundEventRegistry(),
        lease_lock=LeaseLock(fallback=lease_backend, instance_id='replica-a'),
    )


def event(request_id='r1', event_id='m1'):
    return InboundEvent(request_id=request_id, event_id=event_id, channel_id='c1', source_context='g1', user_id='u1')


@pytest.mark.integration
class TestRequestCoordinator:

    @pytest.mark.asyncio
    async def test_completed_request_is_finalized(self, coordinator, lease_backend):
        async def work(context):
            context.set_progress_message('progress-1', job_id='job-1')

        responder = AsyncMock()
        admission = await coordinator.handle(event(), work, responder)

        assert admission == Admission.COMPLETED
        assert coordinator.requests.is_finalized('r1')
        assert coordinator.requests.has_final_response('r1')
        assert coordinator.requests.get_progress_message_for_job('job-1') == 'progress-1'
        responder.assert_not_awaited()
        assert lease_backend.size() == 0

    @pytest.mark.asyncio
    async def test_redelivered_event_ignored(self, coordinator):
        work = AsyncMock()

        first = await coordinator.handle(event(), work)
        second = await coordinator.handle(event(), work)

        assert first == Admission.COMPLETED
        assert second == Admission.DUPLICATE_EVENT
        work.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_request_from_new_event(self, coordinator):
        """The same request id arriving through another event is still rejected."""
        work = AsyncMock()

        await coordinator.handle(event(event_id='m1'), work)
        admission = await coordinator.handle(event(event_id='m2'), work)

        assert admission == Admission.DUPLICATE_REQUEST
        work.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lock_contention_stands_down_and_finalizes(self, coordinator, lease_backend):
        """Another replica holds the lease: no work, request finalized."""
        key = coordinator.lock._full_key(event().lease_key)
        lease_backend.acquire_now(key, 'replica-b-1-0', 60)
        work = AsyncMock()

        admission = await coordinator.handle(event(), work)

        assert admission == Admission.LOCK_CONTENDED
        work.assert_not_awaited()
        assert coordinator.requests.is_finalized('r1')
        assert lease_backend.holder(key) == 'replica-b-1-0'

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_run_work_once(self, coordinator):
        calls = []

        async def work(context):
            calls.append(context.request_id)
            await asyncio.sleep(0)

        results = await asyncio.gather(
            coordinator.handle(event(event_id='m1'), work),
            coordinator.handle(event(event_id='m2'), work),
        )

        assert sorted(results, key=str) == sorted([Admission.COMPLETED, Admission.DUPLICATE_REQUEST], key=str)
        assert calls == ['r1']

    @pytest.mark.asyncio
    async def test_transient_failure_leaves_request_open(self, coordinator, lease_backend):
        async def work(context):
            raise CompletionError("rate limited", status_code=429, transient=True)

        responder = AsyncMock()
        admission = await coordinator.handle(event(), work, responder)

        assert admission == Admission.TRANSIENT_FAILURE
        assert not coordinator.requests.is_finalized('r1')
        responder.assert_not_awaited()
        assert lease_backend.size() == 0

    @pytest.mark.asyncio
    async def test_fatal_failure_sends_one_error(self, coordinator, lease_backend):
        async def work(context):
            raise PipelineFailure('job-1')

        responder = AsyncMock()
        admission = await coordinator.handle(event(), work, responder)

        assert admission == Admission.FAILED
        responder.assert_awaited_once_with(coordinator.error_message)
        assert coordinator.requests.is_finalized('r1')
        assert lease_backend.size() == 0

    @pytest.mark.asyncio
    async def test_no_error_after_final_response(self, coordinator):
        """A success already delivered is never followed by an error message."""
        async def work(context):
            context.mark_final_response_sent()
            raise RuntimeError("cleanup exploded after reply")

        responder = AsyncMock()
        admission = await coordinator.handle(event(), work, responder)

        assert admission == Admission.FAILED
        responder.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_responder_failure_is_swallowed(self, coordinator):
        async def work(context):
            raise ParseError("bad json")

        responder = AsyncMock(side_effect=ConnectionError("chat API down"))
        admission = await coordinator.handle(event(), work, responder)

        assert admission == Admission.FAILED
        assert coordinator.requests.is_finalized('r1')


@pytest.mark.unit
@pytest.mark.parametrize('error,expected', [
    (asyncio.TimeoutError(), True),
    (ConnectionError("reset"), True),
    (CompletionError("429", transient=True), True),
    (CompletionError("400"), False),
    (PipelineFailure('job-1'), False),
    (ValueError("bug"), False),
])
def test_is_transient_error(error, expected):
    assert is_transient_error(error) is expected
