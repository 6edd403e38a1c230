"""
Progress streaming: a per-run event channel and its SSE delivery adapter.

The orchestrator publishes events; any number of subscribers read them from
their own asyncio queue. Subscribers joining late replay the history first.
Leaving (or never joining) has no effect on the run.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from scrape_sync.constants import EventKind, ProgressPhase
from scrape_sync.models import ProgressEvent
from scrape_sync.utils.errors import StateManagerError
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)

# Scraper step -> (message, percent, phase, success)
STEP_MESSAGES = {
    "initializing": ("Initializing scraper...", 5, ProgressPhase.INITIALIZATION, True),
    "startScraping": ("Starting scrape process...", 10, ProgressPhase.INITIALIZATION, True),
    "loginStarted": ("Navigating to login page...", 20, ProgressPhase.AUTHENTICATION, None),
    "loginWaitingForOTP": ("Waiting for OTP verification...", 25, ProgressPhase.AUTHENTICATION, None),
    "changePassword": ("Password change required", 30, ProgressPhase.AUTHENTICATION, False),
    "loginSuccess": ("Login successful", 35, ProgressPhase.AUTHENTICATION, True),
    "loginFailed": ("Login failed", 35, ProgressPhase.AUTHENTICATION, False),
    "fetchingTransactions": ("Fetching transactions from website...", 45, ProgressPhase.DATA_FETCHING, None),
    "gettingAccountDetails": ("Retrieving account details...", 50, ProgressPhase.DATA_FETCHING, None),
    "accountDetailsReceived": ("Account details received", 55, ProgressPhase.DATA_FETCHING, True),
    "processingAccount": ("Processing account {accountNumber}...", 60, ProgressPhase.PROCESSING, None),
    "processingTransactions": ("Processing transactions...", 65, ProgressPhase.PROCESSING, None),
    "fetchingCategory": ("Fetching transaction category...", 70, ProgressPhase.PROCESSING, None),
    "endScraping": ("Scraping completed", 75, ProgressPhase.PROCESSING, True),
}


def format_sse(kind: str, data: Dict[str, Any]) -> str:
    """Server-sent-event frame: event line, data line, blank line"""
    return f"event: {kind}\ndata: {json.dumps(data, default=str, ensure_ascii=False)}\n\n"


class ProgressChannel:
    """Ordered, replayable event stream for one run"""

    def __init__(self, run_id: str, state_store=None):
        self.run_id = run_id
        self.state_store = state_store
        self.history: List[ProgressEvent] = []
        self.completed_steps: List[str] = []
        self.last_percent = 0
        self.last_phase = ProgressPhase.INITIALIZATION
        self.closed = False
        self._subscribers: List[asyncio.Queue] = []
        self._listeners: List[Callable[[ProgressEvent], None]] = []

    @property
    def terminal_event(self) -> Optional[ProgressEvent]:
        if self.history and self.history[-1].is_terminal:
            return self.history[-1]
        return None

    def publish(self, kind: EventKind, data: Dict[str, Any]) -> Optional[ProgressEvent]:
        """
        Append an event and fan it out.

        Returns None (and drops the event) once a terminal event has been published.
        """
        if self.closed:
            logger.debug("Dropping event after terminal event", run_id=self.run_id, kind=kind.value)
            return None

        event = ProgressEvent(kind=kind, data=dict(data), run_id=self.run_id, sequence=len(self.history))
        self.history.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)
        for listener in self._listeners:
            listener(event)

        if event.is_terminal:
            self.closed = True
            for queue in self._subscribers:
                queue.put_nowait(None)

        self._snapshot(event)
        return event

    def progress(self, step: str, message: str, percent: int, phase: ProgressPhase,
                 success: Optional[bool] = None, **extra) -> Optional[ProgressEvent]:
        """Publish a progress event; percent is clamped so it never goes backwards"""
        percent = max(int(percent), self.last_percent)
        self.last_percent = percent
        self.last_phase = phase
        if success is not None and step not in self.completed_steps:
            self.completed_steps.append(step)
        data = {
            "step": step,
            "message": message,
            "percent": percent,
            "phase": phase.value,
            "success": success,
            "completedSteps": list(self.completed_steps),
        }
        data.update(extra)
        return self.publish(EventKind.PROGRESS, data)

    def error(self, message: str, error_type: str, hint: Optional[str] = None, **extra) -> Optional[ProgressEvent]:
        data = {"message": message, "type": error_type}
        if hint:
            data["hint"] = hint
        data.update(extra)
        return self.publish(EventKind.ERROR, data)

    def complete(self, message: str, summary: Dict[str, Any], **extra) -> Optional[ProgressEvent]:
        self.last_percent = 100
        data = {"message": message, "percent": 100, "summary": summary}
        data.update(extra)
        return self.publish(EventKind.COMPLETE, data)

    def subscribe(self) -> asyncio.Queue:
        """
        Queue receiving every event of the run from the start.

        A None item marks the end of the stream.
        """
        queue: asyncio.Queue = asyncio.Queue()
        for event in self.history:
            queue.put_nowait(event)
        if self.closed:
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        return queue

    def add_listener(self, listener: Callable[[ProgressEvent], None]) -> None:
        """Call listener synchronously with every future event"""
        self._listeners.append(listener)

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        queue = self.subscribe()
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self.unsubscribe(queue)

    def _snapshot(self, event: ProgressEvent) -> None:
        if self.state_store is None:
            return
        state = {
            "run_id": self.run_id,
            "last_event": event.kind.value,
            "sequence": event.sequence,
            "percent": self.last_percent,
            "completedSteps": list(self.completed_steps),
            "data": event.data,
        }
        try:
            if event.is_terminal:
                status = "failed" if event.kind == EventKind.ERROR else "completed"
                self.state_store.save_run_state(self.run_id, state)
                self.state_store.mark_run_complete(self.run_id, status, event.data.get("summary"))
            else:
                self.state_store.save_run_state(self.run_id, state)
        except StateManagerError as e:
            logger.warning(f"Run snapshot not saved: {e.message}", run_id=self.run_id)


class ProgressTranslator:
    """Turns scraper callback events into channel events"""

    def __init__(self, channel: ProgressChannel):
        self.channel = channel

    def __call__(self, company_id: str, payload: Optional[Dict[str, Any]]) -> None:
        payload = payload or {}
        if company_id == "network" or payload.get("type") == "network":
            self.channel.publish(EventKind.NETWORK, payload)
            return

        step = payload.get("type") or "unknown"
        if step in STEP_MESSAGES:
            template, percent, phase, success = STEP_MESSAGES[step]
            message = template.format(accountNumber=payload.get("accountNumber", "")).replace(" ...", "...")
        else:
            message, percent, phase, success = f"{step}...", self.channel.last_percent, self.channel.last_phase, None
        if percent < self.channel.last_percent:
            # late or unknown steps report the phase the run is already in
            phase = self.channel.last_phase
        self.channel.progress(step, message, percent, phase, success, details=payload)


async def stream_sse(channel: ProgressChannel) -> AsyncIterator[str]:
    """SSE frames for every event of a run; a closed client just stops iterating"""
    async for event in channel.events():
        yield format_sse(event.kind.value, event.data)
