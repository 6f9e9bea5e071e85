"""Bounded, thread-safe pool of DB-API connections.

Readers share one pool between all table workers:

    pool = ConnectionPool(factory, max_conns=5, max_idle=2, timeout=30.0)
    with pool.connection() as conn:
        cursor = conn.cursor()
        ...
    pool.close()
"""

import threading
import time
from collections import deque
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from dbsift.exceptions import ConnectionError
from dbsift.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _PooledConnection:
    conn: Any
    created_at: float


class ConnectionPool:
    """
    Hands out at most ``max_conns`` connections at a time.

    Released connections are kept for reuse while fewer than ``max_idle``
    are idle; the rest are closed. Connections older than ``max_lifetime``
    seconds are closed instead of being reused (0 = no limit). ``acquire``
    waits at most ``timeout`` seconds for a free slot.
    """

    def __init__(
        self,
        factory: Callable[[], Any],
        max_conns: int,
        max_idle: int,
        max_lifetime: float = 0.0,
        timeout: float | None = None,
        name: str = "pool",
        reset: Callable[[Any], None] | None = None,
    ):
        if max_conns < 1:
            raise ValueError("max_conns must be at least 1")
        self._factory = factory
        self._max_idle = max(0, max_idle)
        self._max_lifetime = max_lifetime
        self._timeout = timeout
        self._name = name
        self._reset = reset
        self._slots = threading.BoundedSemaphore(max_conns)
        self._idle: deque[_PooledConnection] = deque()
        self._in_use: dict[int, _PooledConnection] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._in_use)

    @property
    def idle(self) -> int:
        with self._lock:
            return len(self._idle)

    def _expired(self, pooled: _PooledConnection) -> bool:
        if not self._max_lifetime:
            return False
        return time.monotonic() - pooled.created_at >= self._max_lifetime

    def acquire(self) -> Any:
        """
        Take a connection from the pool, opening one if none is idle.

        Raises:
            ConnectionError: If no slot frees up within the timeout, the pool
                is closed, or a new connection cannot be opened
        """
        if self._closed:
            raise ConnectionError(self._name, "Connection pool is closed")

        if self._timeout is None:
            acquired = self._slots.acquire()
        else:
            acquired = self._slots.acquire(timeout=self._timeout)
        if not acquired:
            raise ConnectionError(
                self._name, f"Timed out after {self._timeout:g}s waiting for a free connection"
            )

        try:
            pooled = self._take_idle()
            if pooled is None:
                pooled = _PooledConnection(conn=self._factory(), created_at=time.monotonic())
                logger.debug("Opened connection", pool=self._name)
        except BaseException:
            self._slots.release()
            raise

        with self._lock:
            self._in_use[id(pooled.conn)] = pooled
        return pooled.conn

    def _take_idle(self) -> _PooledConnection | None:
        while True:
            with self._lock:
                if not self._idle:
                    return None
                pooled = self._idle.pop()
            if not self._expired(pooled):
                return pooled
            self._close_quietly(pooled.conn)

    def release(self, conn: Any, broken: bool = False) -> None:
        """Give a connection back. Broken connections are closed, not reused."""
        with self._lock:
            pooled = self._in_use.pop(id(conn), None)
        if pooled is None:
            raise ValueError("Connection does not belong to this pool")

        try:
            keep = not broken and not self._closed and not self._expired(pooled)
            if keep and self._reset is not None:
                try:
                    self._reset(conn)
                except Exception as e:
                    logger.warning("Discarding connection that failed to reset", error=str(e))
                    keep = False

            with self._lock:
                if keep and len(self._idle) < self._max_idle:
                    self._idle.append(pooled)
                    pooled = None
            if pooled is not None:
                self._close_quietly(pooled.conn)
        finally:
            self._slots.release()

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Context manager that acquires a connection and always releases it."""
        conn = self.acquire()
        broken = False
        try:
            yield conn
        except BaseException:
            broken = True
            raise
        finally:
            self.release(conn, broken=broken)

    def close(self) -> None:
        """Close idle connections; connections in use are closed on release."""
        with self._lock:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
        for pooled in idle:
            self._close_quietly(pooled.conn)
        logger.debug("Closed connection pool", pool=self._name, closed=len(idle))

    def _close_quietly(self, conn: Any) -> None:
        try:
            conn.close()
        except Exception as e:
            logger.debug("Error closing connection", pool=self._name, error=str(e))
