"""Memgraph fact-store adapter — implements ``FactStore``.

The rest of the core treats the graph as an opaque pattern-matching service:
a parametrized Cypher read or write returning plain ``dict`` rows.

Reliability:
    - Lazy driver initialisation guarded by an ``asyncio.Lock``.
    - Exponential-backoff retry for transient errors (dropped connections,
      MVCC conflicts, text-index writer panics).  The driver is discarded on
      connection-level errors so the next attempt reconnects.
    - ``LIMIT $x`` / ``SKIP $x`` are rewritten to ``toInteger($x)`` because
      Memgraph rejects float limits.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

from memforge import config as cfg

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
T = TypeVar("T")


# ── Interface (structural typing) ────────────────────────────────────

class FactStore(Protocol):
    """Parametrized read/write access to the graph."""

    async def run_read(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Row]: ...

    async def run_write(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Row]: ...


# ── Transient error classification ───────────────────────────────────

TRANSIENT_PATTERNS = (
    "Connection was closed by server",
    "Failed to connect to server",
    "ServiceUnavailable",
    "ECONNREFUSED",
    "ECONNRESET",
    "Cannot resolve conflicting transactions",
    "Tantivy error",
    "index writer was killed",
)

_CONNECTION_PATTERNS = TRANSIENT_PATTERNS[:5]


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def is_transient_error(exc: BaseException) -> bool:
    """True when *exc* is worth retrying."""
    text = _error_text(exc)
    return any(p in text for p in TRANSIENT_PATTERNS)


def is_connection_error(exc: BaseException) -> bool:
    text = _error_text(exc)
    return any(p in text for p in _CONNECTION_PATTERNS)


_SKIP_LIMIT_RE = re.compile(r"\b(SKIP|LIMIT)\s+\$(\w+)", re.IGNORECASE)


def wrap_skip_limit(query: str) -> str:
    """Rewrite ``LIMIT $n`` to ``LIMIT toInteger($n)`` (same for SKIP)."""
    return _SKIP_LIMIT_RE.sub(lambda m: f"{m.group(1)} toInteger(${m.group(2)})", query)


# ── Implementation ───────────────────────────────────────────────────

class MemgraphFactStore:
    """Fact store backed by Memgraph over Bolt (async ``neo4j`` driver)."""

    def __init__(
        self,
        url: str | None = None,
        user: str | None = None,
        password: str | None = None,
        *,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
    ) -> None:
        self._url = url or cfg.MEMGRAPH_URL
        self._user = user if user is not None else cfg.MEMGRAPH_USER
        self._password = password if password is not None else cfg.MEMGRAPH_PASSWORD
        self._max_retries = max_retries or cfg.MEMGRAPH_MAX_RETRIES
        self._retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else cfg.MEMGRAPH_RETRY_BASE_DELAY
        )
        self._driver: Any | None = None
        self._init_lock = asyncio.Lock()

    # -- Lazy initialisation (connection pooling) ----------------------

    async def _ensure_driver(self) -> Any:
        if self._driver is not None:
            return self._driver
        async with self._init_lock:
            if self._driver is None:
                from neo4j import AsyncGraphDatabase

                self._driver = AsyncGraphDatabase.driver(
                    self._url,
                    auth=(self._user, self._password),
                    encrypted=False,
                    max_connection_pool_size=cfg.MEMGRAPH_MAX_POOL_SIZE,
                    connection_acquisition_timeout=cfg.MEMGRAPH_ACQUISITION_TIMEOUT,
                )
                logger.info("Memgraph driver created for %s", self._url)
        return self._driver

    async def _reset_driver(self) -> None:
        driver, self._driver = self._driver, None
        if driver is not None:
            try:
                await driver.close()
            except Exception:
                logger.debug("Ignoring error while closing a broken driver", exc_info=True)

    # -- Retry ---------------------------------------------------------

    async def _with_retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(1, self._max_retries + 1):
            try:
                return await fn()
            except Exception as exc:
                if not is_transient_error(exc) or attempt == self._max_retries:
                    raise
                delay = self._retry_base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "Memgraph transient error on attempt %d/%d, retrying in %.2fs: %s",
                    attempt,
                    self._max_retries,
                    delay,
                    str(exc)[:120],
                )
                if is_connection_error(exc):
                    await self._reset_driver()
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")

    async def _run(self, query: str, params: Optional[Dict[str, Any]], access_mode: str) -> List[Row]:
        from neo4j import READ_ACCESS, WRITE_ACCESS

        mode = READ_ACCESS if access_mode == "READ" else WRITE_ACCESS
        cypher = wrap_skip_limit(query)

        async def _once() -> List[Row]:
            driver = await self._ensure_driver()
            async with driver.session(default_access_mode=mode) as session:
                result = await session.run(cypher, params or {})
                return [record.data() async for record in result]

        return await self._with_retry(_once)

    # -- FactStore -----------------------------------------------------

    async def run_read(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Row]:
        return await self._run(query, params, "READ")

    async def run_write(self, query: str, params: Optional[Dict[str, Any]] = None) -> List[Row]:
        return await self._run(query, params, "WRITE")

    # -- Lifecycle -----------------------------------------------------

    async def verify_connectivity(self) -> bool:
        try:
            driver = await self._ensure_driver()
            await driver.verify_connectivity()
            return True
        except Exception:
            logger.warning("Memgraph connectivity check failed", exc_info=True)
            return False

    async def close(self) -> None:
        await self._reset_driver()
