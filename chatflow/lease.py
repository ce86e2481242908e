"""Per-session request context: a cancellation token plus a single-writer lease."""

import asyncio
import logging
import uuid
from typing import Callable, Dict, List, Optional

from .errors import AbortedError


logger = logging.getLogger("uvicorn.error")


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []

    def is_set(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortedError()


class RequestLease:
    def __init__(self, session_id: str) -> None:
        self.id = uuid.uuid4().hex
        self.session_id = session_id
        self.token = CancelToken()
        self.task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        self.token.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()


class LeaseRegistry:
    """One active request per session; a new acquire supersedes the previous lease."""

    def __init__(self) -> None:
        self._leases: Dict[str, RequestLease] = {}

    def acquire(self, session_id: str) -> RequestLease:
        previous = self._leases.get(session_id)
        if previous is not None:
            logger.info("Session %s: superseding in-flight request %s", session_id, previous.id)
            previous.cancel()
        lease = RequestLease(session_id)
        self._leases[session_id] = lease
        return lease

    def release(self, lease: RequestLease) -> None:
        if self._leases.get(lease.session_id) is lease:
            self._leases.pop(lease.session_id, None)

    def cancel(self, session_id: str) -> bool:
        lease = self._leases.pop(session_id, None)
        if lease is None:
            return False
        lease.cancel()
        return True

    def is_active(self, session_id: str) -> bool:
        return session_id in self._leases

    def cancel_all(self) -> None:
        for session_id in list(self._leases.keys()):
            self.cancel(session_id)
