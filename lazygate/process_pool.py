"""
Pool of locally spawned inference backends.

The manager exclusively owns the model_name -> RunningBackend table.
Admission (check memory, evict least-recently-used backends, spawn) runs
under a single asyncio.Lock so two requests can never both observe free
memory and both spawn past the budget.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import psutil

from lazygate.logging_config import logger


MemoryProbe = Callable[[], int]
# Receives the assigned port and returns a started process handle.
Launcher = Callable[[int], Awaitable[Any]]


def system_available_memory() -> int:
    return int(psutil.virtual_memory().available)


@dataclass
class RunningBackend:
    model_name: str
    process: Any
    port: int
    memory_bytes: int
    host: str = "127.0.0.1"
    last_used: float = field(default_factory=time.monotonic)
    started_at: float = field(default_factory=time.time)

    @property
    def api_base(self) -> str:
        return f"http://{self.host}:{self.port}/v1"

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def alive(self) -> bool:
        return getattr(self.process, "returncode", None) is None


class ProcessPoolManager:
    def __init__(
        self,
        *,
        memory_probe: Optional[MemoryProbe] = None,
        port_start: int = 8081,
        host: str = "127.0.0.1",
        kill_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._memory_probe = memory_probe or system_available_memory
        self._next_port = port_start
        self._host = host
        self._kill_timeout = kill_timeout
        self._clock = clock
        self._backends: Dict[str, RunningBackend] = {}
        # Probe reading taken while the pool was last empty.
        self._baseline_available: Optional[int] = None
        self._lock = asyncio.Lock()

    # -- introspection -------------------------------------------------

    def get(self, model_name: str) -> Optional[RunningBackend]:
        """
        Live backend for a model; entries whose process already exited are dropped.
        """
        backend = self._backends.get(model_name)
        if backend is not None and not backend.alive:
            logger.warning(
                "process_pool: backend for %r (pid=%s) exited with %s; forgetting it",
                model_name,
                backend.pid,
                getattr(backend.process, "returncode", None),
            )
            self._backends.pop(model_name, None)
            return None
        return backend

    def snapshot(self) -> List[RunningBackend]:
        """Running backends, least recently used first."""
        return sorted(self._backends.values(), key=lambda b: b.last_used)

    @property
    def reserved_memory_bytes(self) -> int:
        return sum(b.memory_bytes for b in self._backends.values())

    def touch(self, model_name: str) -> bool:
        backend = self._backends.get(model_name)
        if backend is None:
            return False
        backend.last_used = self._clock()
        return True

    # -- eviction --------------------------------------------------------

    async def _terminate(self, backend: RunningBackend) -> None:
        try:
            backend.process.kill()
        except ProcessLookupError:
            # Already gone; removal is idempotent.
            pass
        try:
            await asyncio.wait_for(backend.process.wait(), timeout=self._kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "process_pool: backend for %r (pid=%s) not reaped after %.1fs",
                backend.model_name,
                backend.pid,
                self._kill_timeout,
            )

    async def _evict_one_lru_locked(self) -> Optional[RunningBackend]:
        if not self._backends:
            return None
        victim = min(self._backends.values(), key=lambda b: b.last_used)
        self._backends.pop(victim.model_name, None)
        logger.info(
            "process_pool: evicting %r (pid=%s, port=%d, memory=%d bytes)",
            victim.model_name,
            victim.pid,
            victim.port,
            victim.memory_bytes,
        )
        await self._terminate(victim)
        return victim

    async def evict_one_lru(self) -> bool:
        """
        Kill the least recently used backend. False when the pool is empty.
        """
        async with self._lock:
            return await self._evict_one_lru_locked() is not None

    async def remove(self, model_name: str) -> bool:
        async with self._lock:
            backend = self._backends.pop(model_name, None)
            if backend is None:
                return False
            await self._terminate(backend)
            return True

    async def shutdown(self) -> None:
        async with self._lock:
            backends = list(self._backends.values())
            self._backends.clear()
            for backend in backends:
                logger.info("process_pool: stopping %r on shutdown", backend.model_name)
                await self._terminate(backend)

    # -- admission -------------------------------------------------------

    def _headroom_locked(self) -> int:
        available = self._memory_probe()
        if not self._backends:
            self._baseline_available = available
            return available
        if self._baseline_available is None:
            return available
        # A backend that is still loading has not lowered the probe yet, so
        # its declared size is charged against the baseline as well.
        return min(available, self._baseline_available - self.reserved_memory_bytes)

    async def _admit_locked(self, required_bytes: int) -> bool:
        available = self._headroom_locked()
        freed = 0
        while required_bytes > available + freed:
            victim = await self._evict_one_lru_locked()
            if victim is None:
                logger.warning(
                    "process_pool: need %d bytes but only %d available and nothing left to evict",
                    required_bytes,
                    available + freed,
                )
                return False
            freed += victim.memory_bytes
        return True

    def _allocate_port(self) -> int:
        # Monotonic: a just-killed backend may still hold its old socket.
        in_use = {b.port for b in self._backends.values()}
        port = self._next_port
        while port in in_use:
            port += 1
        self._next_port = port + 1
        return port

    async def ensure_backend(
        self,
        model_name: str,
        required_bytes: int,
        launcher: Launcher,
    ) -> Optional[RunningBackend]:
        """
        Return the running backend for `model_name`, starting one if needed.

        None means the memory budget cannot be met even with every other
        backend evicted. Exceptions from `launcher` propagate and leave the
        pool without an entry for this model.
        """
        async with self._lock:
            existing = self.get(model_name)
            if existing is not None:
                existing.last_used = self._clock()
                return existing

            if not await self._admit_locked(required_bytes):
                return None

            port = self._allocate_port()
            process = await launcher(port)
            backend = RunningBackend(
                model_name=model_name,
                process=process,
                port=port,
                memory_bytes=required_bytes,
                host=self._host,
                last_used=self._clock(),
            )
            self._backends[model_name] = backend
            logger.info(
                "process_pool: started %r on port %d (pid=%s, memory=%d bytes, pool size=%d)",
                model_name,
                port,
                backend.pid,
                required_bytes,
                len(self._backends),
            )
            return backend


__all__ = [
    "Launcher",
    "MemoryProbe",
    "ProcessPoolManager",
    "RunningBackend",
    "system_available_memory",
]
