"""Request Coordinator
=====================

Admission glue between the chat front end and the pipeline. For every
inbound event:

    event registry -> request registry -> lease lock -> work -> finalize

Duplicates and lease contention are silent "do nothing" outcomes. A
transient failure leaves the request open so a redelivery may retry it;
any other failure sends at most one user-facing error and finalizes.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from codeforge.constants import BaseEnum
from codeforge.services.request_registry import (
    InboundEventRegistry,
    RequestRegistry,
    get_event_registry,
    get_request_registry,
)
from codeforge.services.service_base import CompletionError, DuplicateRequestError, LockContentionError
from codeforge.utils.distributed_lock import LeaseLock, get_lease_lock
from codeforge.utils.notifications import fire_and_forget

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Sorry, something went wrong while handling your request. Please try again."

Responder = Callable[[str], Any]


class Admission(BaseEnum):
    DUPLICATE_EVENT = 'duplicate_event'
    DUPLICATE_REQUEST = 'duplicate_request'
    LOCK_CONTENDED = 'lock_contended'
    COMPLETED = 'completed'
    TRANSIENT_FAILURE = 'transient_failure'
    FAILED = 'failed'


@dataclass
class InboundEvent:
    """One inbound chat event."""
    request_id: str
    event_id: str
    channel_id: str
    source_context: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def lease_key(self) -> str:
        return InboundEventRegistry.make_key(self.source_context, self.channel_id, self.event_id)


class RequestContext:
    """Handed to the work callable; records progress and final responses."""

    def __init__(self, event: InboundEvent, registry: RequestRegistry):
        self.event = event
        self._registry = registry

    @property
    def request_id(self) -> str:
        return self.event.request_id

    def set_progress_message(self, handle: str, job_id: Optional[str] = None) -> None:
        self._registry.set_progress_message_id(self.request_id, handle, job_id)

    def mark_final_response_sent(self) -> None:
        self._registry.set_final_response_sent(self.request_id)

    @property
    def has_final_response(self) -> bool:
        return self._registry.has_final_response(self.request_id)


def is_transient_error(error: BaseException) -> bool:
    """Errors a redelivery of the same event may succeed on."""
    if isinstance(error, CompletionError):
        return error.transient
    return isinstance(error, (asyncio.TimeoutError, ConnectionError))


class RequestCoordinator:
    """Runs work for an inbound event at most once across replicas.

    Usage:
        coordinator = RequestCoordinator()
        admission = await coordinator.handle(event, work, responder)
    """

    def __init__(
        self,
        request_registry: Optional[RequestRegistry] = None,
        event_registry: Optional[InboundEventRegistry] = None,
        lease_lock: Optional[LeaseLock] = None,
        error_message: str = DEFAULT_ERROR_MESSAGE,
    ):
        self.requests = request_registry or get_request_registry()
        self.events = event_registry or get_event_registry()
        self.lock = lease_lock or get_lease_lock()
        self.error_message = error_message

    async def admit(self, event: InboundEvent) -> RequestContext:
        """Register the request and take its lease.

        Raises:
            DuplicateRequestError: the request id is inside its retention window
            LockContentionError: another owner holds the lease; the request
                is finalized so it is never retried here
        """
        if self.requests.register(event.request_id) is None:
            raise DuplicateRequestError(event.request_id)

        lease = await self.lock.acquire(event.lease_key)
        if not lease.acquired:
            self.requests.finalize(event.request_id)
            raise LockContentionError(event.lease_key, lease.owner)
        return RequestContext(event, self.requests)

    async def handle(
        self,
        event: InboundEvent,
        work: Callable[[RequestContext], Awaitable[Any]],
        responder: Optional[Responder] = None,
    ) -> Admission:
        if not self.events.check_and_mark(event.source_context, event.channel_id, event.event_id):
            logger.debug(f"Event {event.lease_key} already seen, ignoring")
            return Admission.DUPLICATE_EVENT

        try:
            context = await self.admit(event)
        except DuplicateRequestError:
            return Admission.DUPLICATE_REQUEST
        except LockContentionError as e:
            logger.info(f"Request {event.request_id} standing down: {e}")
            return Admission.LOCK_CONTENDED

        try:
            await work(context)
        except Exception as e:
            if is_transient_error(e):
                logger.warning(f"Transient failure on request {event.request_id}: {e}")
                return Admission.TRANSIENT_FAILURE

            logger.error(f"Request {event.request_id} failed: {e}", exc_info=True)
            if responder is not None and not self.requests.has_final_response(event.request_id):
                await fire_and_forget(responder, self.error_message)
                self.requests.set_final_response_sent(event.request_id)
            self.requests.finalize(event.request_id)
            return Admission.FAILED
        finally:
            await self.lock.release(event.lease_key)

        self.requests.set_final_response_sent(event.request_id)
        self.requests.finalize(event.request_id)
        return Admission.COMPLETED
