"""
Idempotency-Key deduplication for state-changing requests.

``IdempotencyCoordinator`` keeps a key -> record table. A record is either
in flight (an ``asyncio.Event`` set when the owning request finishes) or
completed (the captured 2xx response). Only 2xx responses are cached; any
other outcome removes the record so the next request with the key runs the
handler again.

Completed records live for the life of the process unless ``ttl_seconds``
is set.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

import structlog
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from errors import IdempotencyKeyInUse
from models import ErrorResponse

logger = structlog.get_logger()

IDEMPOTENCY_HEADER = "Idempotency-Key"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass(frozen=True)
class CapturedResponse:
    status_code: int
    body: bytes
    # Raw (name, value) pairs in order; repeated names such as set-cookie stay separate
    headers: Tuple[Tuple[bytes, bytes], ...] = ()

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class _InFlight:
    done: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass(frozen=True)
class _Completed:
    response: CapturedResponse
    stored_at: float


_Record = Union[_InFlight, _Completed]

Handler = Callable[[], Awaitable[CapturedResponse]]


class IdempotencyCoordinator:
    def __init__(
        self,
        wait_timeout: Optional[float] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.wait_timeout = wait_timeout
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: Dict[str, _Record] = {}
        # Held only for non-blocking check-and-set steps
        self._lock = threading.Lock()

    def size(self) -> int:
        with self._lock:
            return len(self._records)

    def state(self, key: str) -> str:
        """Return "absent", "in_flight" or "completed" for key."""
        with self._lock:
            record = self._live_record(key)
        if record is None:
            return "absent"
        return "in_flight" if isinstance(record, _InFlight) else "completed"

    def _live_record(self, key: str) -> Optional[_Record]:
        record = self._records.get(key)
        if (
            isinstance(record, _Completed)
            and self.ttl_seconds is not None
            and self._clock() - record.stored_at >= self.ttl_seconds
        ):
            del self._records[key]
            return None
        return record

    def _finish(self, key: str, owned: _InFlight, response: Optional[CapturedResponse]) -> None:
        with self._lock:
            if response is not None and response.is_success:
                self._records[key] = _Completed(response=response, stored_at=self._clock())
            else:
                self._records.pop(key, None)
        owned.done.set()

    async def _wait(self, key: str, record: _InFlight) -> None:
        if self.wait_timeout is None:
            await record.done.wait()
            return
        try:
            await asyncio.wait_for(record.done.wait(), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out waiting for in-flight request",
                idempotency_key=key,
                timeout=self.wait_timeout,
            )
            raise IdempotencyKeyInUse() from None

    async def execute(self, method: str, key: Optional[str], handler: Handler) -> CapturedResponse:
        """Run handler at most once per key for any response that ends up cached."""
        if not key or method.upper() in SAFE_METHODS:
            return await handler()

        while True:
            fresh = _InFlight()
            # Check-and-set: exactly one caller installs its record for an absent key
            with self._lock:
                record = self._live_record(key)
                if record is None:
                    self._records[key] = fresh
            if record is None:
                return await self._run_owned(key, fresh, handler)

            if isinstance(record, _Completed):
                logger.info("Replaying cached response", idempotency_key=key)
                return record.response

            logger.debug("Waiting for in-flight request", idempotency_key=key)
            await self._wait(key, record)
            # The owner either cached a response or released the key; look again.

    async def _run_owned(self, key: str, owned: _InFlight, handler: Handler) -> CapturedResponse:
        try:
            response = await handler()
        except BaseException:
            self._finish(key, owned, None)
            logger.warning("Released idempotency key after handler error", idempotency_key=key)
            raise

        self._finish(key, owned, response)
        if response.is_success:
            logger.debug("Cached response", idempotency_key=key, status_code=response.status_code)
        else:
            logger.info(
                "Response not cached",
                idempotency_key=key,
                status_code=response.status_code,
            )
        return response


class IdempotencyMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, coordinator: IdempotencyCoordinator):
        super().__init__(app)
        self.coordinator = coordinator

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        async def invoke() -> CapturedResponse:
            response = await call_next(request)
            body = b"".join([chunk async for chunk in response.body_iterator])
            headers = tuple(
                (name, value)
                for name, value in response.raw_headers
                if name.lower() != b"content-length"
            )
            return CapturedResponse(status_code=response.status_code, body=body, headers=headers)

        try:
            captured = await self.coordinator.execute(
                request.method, request.headers.get(IDEMPOTENCY_HEADER), invoke
            )
        except IdempotencyKeyInUse as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content=ErrorResponse(detail=exc.message, error_code=exc.error_code).model_dump(mode="json"),
            )

        replayed = Response(content=captured.body, status_code=captured.status_code)
        replayed.raw_headers = [
            *captured.headers,
            (b"content-length", str(len(captured.body)).encode("latin-1")),
        ]
        return replayed
