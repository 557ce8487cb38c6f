"""Request Registries
====================

In-process idempotency state for inbound chat events.

RequestRegistry
    Per-request state machine enforcing "one progress message, one terminal
    result". A request id is rejected for 30 minutes after registration,
    finalized or not, so retries that arrive after a fast success are
    dropped along with concurrent duplicates.

InboundEventRegistry
    Short-TTL (5 min) set of seen event keys for coarse suppression of
    redelivered events. Independent of RequestRegistry.

Every operation is total: unknown ids read as False/None and writes to
unknown ids are no-ops. No operation awaits, so each call is atomic on the
event loop.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

REQUEST_TTL_SECONDS = 30 * 60
EVENT_TTL_SECONDS = 5 * 60


@dataclass
class InFlightRequest:
    """Processing state of one inbound request."""
    request_id: str
    started_at: float
    progress_message_id: Optional[str] = None
    job_id: Optional[str] = None
    finalized: bool = False
    has_final_response: bool = False


class RequestRegistry:
    """Tracks in-flight and recently finalized requests."""

    def __init__(self, ttl: float = REQUEST_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._requests: Dict[str, InFlightRequest] = {}

    def _sweep(self) -> None:
        now = self._clock()
        expired = [
            rid for rid, req in self._requests.items()
            if req.finalized and now - req.started_at > self.ttl
        ]
        for rid in expired:
            del self._requests[rid]
        if expired:
            logger.debug(f"Swept {len(expired)} finalized request(s)")

    def register(self, request_id: str) -> Optional[InFlightRequest]:
        """Register a request; None means "duplicate, stop processing"."""
        self._sweep()
        now = self._clock()
        existing = self._requests.get(request_id)
        if existing is not None and now - existing.started_at < self.ttl:
            logger.info(
                f"Duplicate request {request_id} rejected "
                f"(finalized={existing.finalized}, age={now - existing.started_at:.1f}s)"
            )
            return None

        request = InFlightRequest(request_id=request_id, started_at=now)
        self._requests[request_id] = request
        return request

    def set_progress_message_id(self, request_id: str, handle: str, job_id: Optional[str] = None) -> None:
        """Record the progress message handle (and job) for a request.

        Last writer wins; callers treat the first assignment as authoritative.
        """
        request = self._requests.get(request_id)
        if request is None:
            return
        if request.progress_message_id and request.progress_message_id != handle:
            logger.debug(f"Progress handle for {request_id} replaced ({request.progress_message_id} -> {handle})")
        request.progress_message_id = handle
        if job_id:
            request.job_id = job_id

    def get_progress_message_for_job(self, job_id: str) -> Optional[str]:
        for request in self._requests.values():
            if request.job_id == job_id and request.progress_message_id:
                return request.progress_message_id
        return None

    def finalize(self, request_id: str) -> None:
        request = self._requests.get(request_id)
        if request is not None:
            request.finalized = True

    def is_finalized(self, request_id: str) -> bool:
        request = self._requests.get(request_id)
        return bool(request and request.finalized)

    def set_final_response_sent(self, request_id: str) -> None:
        request = self._requests.get(request_id)
        if request is not None:
            request.has_final_response = True

    def has_final_response(self, request_id: str) -> bool:
        request = self._requests.get(request_id)
        return bool(request and request.has_final_response)

    def get(self, request_id: str) -> Optional[InFlightRequest]:
        return self._requests.get(request_id)

    def size(self) -> int:
        return len(self._requests)

    def clear(self) -> None:
        self._requests.clear()


class InboundEventRegistry:
    """Recently seen (source, channel, event) keys."""

    def __init__(self, ttl: float = EVENT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._seen: Dict[str, float] = {}

    @staticmethod
    def make_key(source_context: Optional[str], channel_id: str, event_id: str) -> str:
        return f"{source_context or 'dm'}:{channel_id}:{event_id}"

    def _sweep(self) -> None:
        now = self._clock()
        for key in [k for k, ts in self._seen.items() if now - ts > self.ttl]:
            del self._seen[key]

    def has_seen(self, source_context: Optional[str], channel_id: str, event_id: str) -> bool:
        self._sweep()
        return self.make_key(source_context, channel_id, event_id) in self._seen

    def mark_seen(self, source_context: Optional[str], channel_id: str, event_id: str) -> None:
        self._seen[self.make_key(source_context, channel_id, event_id)] = self._clock()

    def check_and_mark(self, source_context: Optional[str], channel_id: str, event_id: str) -> bool:
        """Mark the event and return True if it had not been seen."""
        if self.has_seen(source_context, channel_id, event_id):
            return False
        self.mark_seen(source_context, channel_id, event_id)
        return True

    def size(self) -> int:
        return len(self._seen)

    def clear(self) -> None:
        self._seen.clear()


# Singleton instances
_request_registry: Optional[RequestRegistry] = None
_event_registry: Optional[InboundEventRegistry] = None


def get_request_registry() -> RequestRegistry:
    global _request_registry
    if _request_registry is None:
        _request_registry = RequestRegistry()
    return _request_registry


def get_event_registry() -> InboundEventRegistry:
    global _event_registry
    if _event_registry is None:
        _event_registry = InboundEventRegistry()
    return _event_registry
