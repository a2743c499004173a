"""
Break-Mode Coordinator.

One global poller reads the server's break state every few seconds and diffs
each feed's on-break flag against the cached copy; only a flip reaches the
feed's state machine. A producer toggle applies locally straight away and is
written through to the server, whose echoed state becomes the new cache.
Two producers racing within one poll window resolve as last writer wins.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from config import settings
from models import BreakEntry
from poll_scheduler import PollHandle, PollPurpose, PollScheduler, PollSlot

logger = logging.getLogger(__name__)

BreakApplier = Callable[[int, BreakEntry], None]


def parse_break_state(break_mode: Dict[str, Any]) -> Dict[int, BreakEntry]:
    """Per-feed entries keyed by feed index; bookkeeping keys are skipped."""
    state = {}
    for key, value in (break_mode or {}).items():
        if key.isdigit():
            state[int(key)] = BreakEntry.from_raw(value)
    return state


class BreakModeCoordinator:
    def __init__(
        self,
        scheduler: PollScheduler,
        apply: BreakApplier,
        api_base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.scheduler = scheduler
        self.apply = apply
        self.api_base_url = (api_base_url or settings.DASHBOARD_API_URL).rstrip("/")
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.STATUS_REQUEST_TIMEOUT,
            follow_redirects=True,
        )
        self.cache: Dict[int, BreakEntry] = {}
        self.poller = PollSlot(PollPurpose.BREAK)

    @property
    def url(self) -> str:
        return f"{self.api_base_url}/break-mode"

    def start(self, start_delay: Optional[float] = None):
        if self.poller.armed:
            return
        if start_delay is None:
            start_delay = settings.BREAK_POLL_START_DELAY
        logger.info(f"Starting break mode poller (every {self.scheduler.interval_for(PollPurpose.BREAK)}s)")
        self.poller.arm(self.scheduler.create(
            "break-mode", PollPurpose.BREAK, self._tick, start_delay=start_delay))

    def stop(self):
        self.poller.clear()

    def reset(self):
        """Forget the cached state so the next poll re-applies server truth."""
        self.cache.clear()

    async def aclose(self):
        self.stop()
        if self._owns_client:
            await self.http_client.aclose()

    async def _tick(self, handle: PollHandle):
        state = await self.fetch()
        if state is None or not self.poller.owns(handle):
            return
        self.reconcile(state)

    async def poll_once(self) -> Optional[Dict[int, BreakEntry]]:
        state = await self.fetch()
        if state is not None:
            self.reconcile(state)
        return state

    async def fetch(self) -> Optional[Dict[int, BreakEntry]]:
        try:
            response = await self.http_client.get(
                self.url,
                params={"_": int(time.time() * 1000)},
                headers={"Cache-Control": "no-cache", "Pragma": "no-cache"},
            )
        except Exception as e:
            logger.warning(f"Break mode fetch failed: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"Break mode API unavailable ({response.status_code})")
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning("Break mode API returned an unparseable body")
            return None
        if not isinstance(data, dict) or not data.get("success") or not isinstance(data.get("breakMode"), dict):
            return None
        return parse_break_state(data["breakMode"])

    def reconcile(self, state: Dict[int, BreakEntry]):
        """Diff the fetched state against the cache and apply each flip once."""
        for index in sorted(state):
            entry = state[index]
            previous = self.cache.get(index, BreakEntry())
            self.cache[index] = entry
            if entry.on_break != previous.on_break:
                logger.info(
                    f"Feed {index}: break mode changed {previous.on_break} -> {entry.on_break}")
                self._apply(index, entry)

    async def set_break(self, index: int, on_break: bool, slot: Optional[int] = None,
                        updated_by: str = "producer") -> Optional[Dict[str, Any]]:
        """Producer toggle: apply immediately, then write through.

        Returns the server's echoed break state, or None when the write failed
        (the next poll then reconciles with whatever the server holds).
        """
        entry = BreakEntry(on_break=on_break, active_slot=slot if on_break else None)
        self.cache[index] = entry
        self._apply(index, entry)

        try:
            response = await self.http_client.post(
                self.url,
                json={"streamIndex": index, "isOnBreak": on_break, "slot": entry.active_slot,
                      "updatedBy": updated_by},
            )
        except Exception as e:
            logger.error(f"Feed {index}: failed to save break mode: {e}")
            return None
        if response.status_code != 200:
            logger.error(f"Feed {index}: server rejected break mode change ({response.status_code})")
            return None

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Feed {index}: unparseable break mode echo: {e}")
            return None
        break_mode = data.get("breakMode") if isinstance(data, dict) else None
        if isinstance(break_mode, dict):
            # The echoed state is read-after-write truth
            self.reconcile(parse_break_state(break_mode))
        return break_mode

    def _apply(self, index: int, entry: BreakEntry):
        try:
            self.apply(index, entry)
        except Exception as e:
            logger.error(f"Feed {index}: error applying break mode: {e}")
