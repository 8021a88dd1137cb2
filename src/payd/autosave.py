"""Debounced autosave of the payroll form.

Every ``schedule`` call re-arms the timer, so only the last value written
within a debounce window reaches the store. Writes are serialized by a lock
released on every exit path; a reader sees the previous value or the new
one, never part of one.
"""

import asyncio
import contextlib
import copy
import logging
import time

import payd.constants as C
from payd.store import Store

log = logging.getLogger("payd.autosave")


class Autosaver:
    def __init__(self, store: Store, key: str = C.DRAFT_KEY, *, debounce: float = C.AUTOSAVE_DEBOUNCE) -> None:
        self.store = store
        self.key = key
        self.debounce = debounce
        self.saving = False
        self.last_saved: float | None = None
        self._pending: dict | None = None
        self._timer: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()

    def schedule(self, value: dict) -> None:
        """Remember ``value`` and (re)start the debounce timer. Must be called from a running loop."""
        self._pending = copy.deepcopy(value)
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._fire(), name=f"autosave:{self.key}")
        self._timer.add_done_callback(self._on_timer_done)

    async def _fire(self) -> None:
        await asyncio.sleep(self.debounce)
        # A write that has started finishes even if a newer value re-arms the timer.
        await asyncio.shield(self.flush())

    def _on_timer_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # flush() already logged the traceback and kept the value pending.
            log.warning("Debounced autosave of %s failed: %s: %s", self.key, type(exc).__name__, exc)

    async def flush(self) -> bool:
        """Write the pending value now. Returns False if there was nothing to write."""
        async with self._write_lock:
            value, self._pending = self._pending, None
            if value is None:
                return False
            self.saving = True
            try:
                await self.store.save(self.key, value)
            except Exception:
                # Keep it for the next attempt unless something newer arrived meanwhile.
                if self._pending is None:
                    self._pending = value
                log.exception("Autosave of %s failed", self.key)
                raise
            finally:
                self.saving = False
            self.last_saved = time.time()
            log.debug("Autosaved %s", self.key)
            return True

    async def load(self) -> dict | None:
        return await self.store.load(self.key)

    async def close(self) -> None:
        """Cancel the timer and write whatever is pending."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer
        await self.flush()

    def status(self) -> dict:
        return {"saving": self.saving, "last_saved": self.last_saved, "pending": self._pending is not None}
