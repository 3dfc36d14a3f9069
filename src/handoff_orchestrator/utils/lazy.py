"""Lazily-initialized shared resources."""

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LazyResource(Generic[T]):
    """Run an async factory at most once and share its value with all callers.

    Concurrent first calls await the same in-flight initialization. A failed
    initialization is not cached; the next call retries.
    """

    def __init__(self, factory: Callable[[], Awaitable[T]], name: str = "resource"):
        self._factory = factory
        self._name = name
        self._value: Optional[T] = None
        self._ready = False
        self._inflight: Optional["asyncio.Task[T]"] = None

    @property
    def initialized(self) -> bool:
        return self._ready

    async def get(self) -> T:
        if self._ready:
            return self._value  # type: ignore[return-value]

        if self._inflight is None:
            logger.debug(f"Initializing shared {self._name}")
            self._inflight = asyncio.ensure_future(self._factory())

        inflight = self._inflight
        try:
            # shield: one cancelled waiter must not cancel the shared init
            value = await asyncio.shield(inflight)
        except Exception:
            if self._inflight is inflight:
                self._inflight = None
            raise

        if not self._ready:
            self._value = value
            self._ready = True
            self._inflight = None
        return value

    def reset(self) -> None:
        """Forget the cached value so the next ``get`` re-runs the factory."""
        self._value = None
        self._ready = False
        self._inflight = None
