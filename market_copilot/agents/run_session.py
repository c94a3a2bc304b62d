"""Run session: one keyword submission at a time, newest wins.

Every call to :meth:`RunSession.start` mints a fresh :class:`RunToken` and
makes it the active one. Responses for older tokens may still arrive (the
transport call is not aborted), so every continuation reads the live
:class:`ActiveToken` cell at the moment it wants to mutate state and drops
its result if the cell has moved on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from market_copilot.agents.progress import ProgressEstimator, Stage
from market_copilot.agents.stream_decoder import StreamDecoder
from market_copilot.config.settings import get_settings
from market_copilot.data.schema import Listing, ResultSet, RunRecord, RunState, RunToken, SelectionSet, StreamRecord
from market_copilot.errors import RetryLater, RunFailed
from market_copilot.llm.clients import NDJSON, BackendClient, get_backend_client, read_json

logger = logging.getLogger(__name__)

QUEUED_MESSAGE = "Analysis queued. Ready in ~5–10 minutes."
BUSY_MESSAGE = "The analysis service is busy. Please try again in a moment."

# Single-shot replies carry no stage information, so progress is staged on timers.
SINGLE_SHOT_MARKS: tuple[tuple[Stage, float], ...] = (
    ("fetching", 0.3),
    ("enriching", 1.5),
    ("computing", 4.0),
    ("finalizing", 8.0),
)


class ActiveToken:
    """Single-owner mutable cell holding the currently wanted run.

    Continuations keep a reference to the cell, never a copy of its value,
    so the comparison always sees the latest ``start``.
    """

    def __init__(self) -> None:
        self.current: RunToken | None = None

    def set(self, token: RunToken | None) -> None:
        self.current = token

    def matches(self, token: RunToken) -> bool:
        return self.current is not None and self.current.value == token.value


@dataclass
class _RunHandle:
    record: RunRecord
    superseded: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None


class RunSession:
    """Owns the active token and everything that depends on it."""

    def __init__(
        self,
        client: BackendClient | None = None,
        progress: ProgressEstimator | None = None,
        selection: SelectionSet | None = None,
        retry_delay: float | None = None,
    ):
        settings = get_settings()
        self.client = client or get_backend_client()
        self.progress = progress or ProgressEstimator()
        self.selection = selection or SelectionSet()
        self.retry_delay = retry_delay if retry_delay is not None else settings.retry_delay_seconds
        self.cancel_superseded = settings.cancel_superseded_requests

        self.active = ActiveToken()
        self.runs: dict[str, _RunHandle] = {}
        self.result: ResultSet | None = None
        self.partial_listings: list[Listing] = []
        self.partial_payload: dict[str, Any] = {}
        self.error: RunFailed | None = None
        self.notice: str | None = None

        self._reset_listeners: list[Callable[[RunToken], None]] = []
        self._commit_listeners: list[Callable[[ResultSet], None]] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_reset(self, listener: Callable[[RunToken], None]) -> None:
        self._reset_listeners.append(listener)

    def on_commit(self, listener: Callable[[ResultSet], None]) -> None:
        self._commit_listeners.append(listener)

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        token = self.active.current
        if token is None:
            return RunState.IDLE
        return self.runs[token.value].record.state

    def state_of(self, token: RunToken) -> RunState:
        return self.runs[token.value].record.state

    def is_current(self, token: RunToken) -> bool:
        return self.active.matches(token)

    def _advance(self, token: RunToken, new_state: RunState) -> None:
        handle = self.runs.get(token.value)
        if handle is not None and not handle.record.advance(new_state):
            logger.debug(f"Run {token} ignored transition {handle.record.state.value} -> {new_state.value}")

    def dismiss_error(self) -> None:
        self.error = None
        self.notice = None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start(self, query: str) -> RunToken:
        """Supersede any current run and reset dependent state."""
        query = query.strip()
        previous = self.active.current
        if previous is not None:
            self._supersede(previous)

        token = RunToken.new(query)
        self.runs[token.value] = _RunHandle(record=RunRecord(token=token))
        self.active.set(token)

        self.result = None
        self.partial_listings = []
        self.partial_payload = {}
        self.error = None
        self.notice = None
        self.selection.clear()
        self.progress.start()
        for listener in list(self._reset_listeners):
            listener(token)
        logger.info(f"Run {token} started for {query!r}")
        return token

    def _supersede(self, token: RunToken) -> None:
        handle = self.runs.get(token.value)
        if handle is None:
            return
        if not handle.record.state.terminal:
            handle.record.state = RunState.STALE
            logger.debug(f"Run {token} superseded before completion")
        handle.superseded.set()
        if self.cancel_superseded and handle.task is not None and not handle.task.done():
            handle.task.cancel()

    def run(self, query: str) -> asyncio.Task:
        """Start a run and schedule its submission on the running loop."""
        token = self.start(query)
        task = asyncio.get_running_loop().create_task(self.submit(token, query))
        self.runs[token.value].task = task
        return task

    async def submit(self, token: RunToken, query: str | None = None) -> ResultSet | None:
        """Issue the request for ``token`` and commit its result if still wanted.

        Returns the committed result, or None when the run failed or was
        superseded. Failures are recorded on the session, never raised.
        """
        query = query if query is not None else token.query
        handle = self.runs[token.value]
        self._advance(token, RunState.SUBMITTED)
        if self.is_current(token):
            self.schedule_single_shot_marks()

        try:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(2),
                wait=wait_fixed(self.retry_delay),
                retry=retry_if_exception_type(RetryLater),
                sleep=lambda seconds: self._retry_sleep(handle, seconds),
                reraise=True,
            )
            result = None
            async for attempt in retrying:
                with attempt:
                    if not self.is_current(token):
                        logger.debug(f"Run {token} superseded before submission; skipping")
                        return None
                    result = await self._attempt(token, query)
        except RetryLater:
            self._fail(token, RunFailed(BUSY_MESSAGE, kind="status", status_code=503))
            return None
        except RunFailed as e:
            self._fail(token, e)
            return None
        except httpx.HTTPError as e:
            self._fail(token, RunFailed(f"Network error: {e}", kind="network"))
            return None

        if result is None:
            return None
        return await self._commit(token, result)

    async def _retry_sleep(self, handle: _RunHandle, seconds: float) -> None:
        # A superseded run wakes early; the next attempt sees the stale token.
        try:
            await asyncio.wait_for(handle.superseded.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _attempt(self, token: RunToken, query: str) -> ResultSet | None:
        async with self.client.open_analyze(query) as response:
            if not self.is_current(token):
                logger.debug(f"Dropping response for stale run {token}")
                return None

            status = response.status_code
            if status == 503:
                logger.info(f"Run {token} got 503; will retry once in {self.retry_delay}s")
                raise RetryLater()
            if status == 202:
                data = await read_json(response)
                raise RunFailed(data.get("message") or QUEUED_MESSAGE, kind="queued", status_code=status)
            if status >= 400:
                data = await read_json(response)
                raise RunFailed(_error_message(data, status), kind="status", status_code=status)

            content_type = response.headers.get("content-type", "")
            if NDJSON in content_type:
                return await self._consume_stream(token, query, response)

            data = await read_json(response)
            if not self.is_current(token):
                logger.debug(f"Dropping single-shot payload for stale run {token}")
                return None
            if data.get("status") == "queued":
                raise RunFailed(data.get("message") or QUEUED_MESSAGE, kind="queued", status_code=status)
            return ResultSet.from_payload(data, query, require_items=True)

    async def _consume_stream(self, token: RunToken, query: str, response: httpx.Response) -> ResultSet | None:
        self._advance(token, RunState.STREAMING)
        decoder = StreamDecoder()
        async for record in decoder.decode(response.aiter_bytes()):
            if not self.is_current(token):
                logger.debug(f"Dropping {record.type} record for stale run {token}")
                return None
            if record.type == "partial":
                self._apply_partial(record)
        complete = decoder.complete
        if not self.is_current(token):
            return None
        return ResultSet.from_payload(
            complete.payload,
            query,
            require_items=False,
            fallback_listings=self.partial_listings,
        )

    def _apply_partial(self, record: StreamRecord) -> None:
        payload = record.payload
        stage = payload.get("stage")
        if isinstance(stage, str):
            self.progress.mark(stage)
        known = {listing.item_id for listing in self.partial_listings}
        for key in ("page_one_listings", "products", "listings"):
            for obj in payload.get(key) or []:
                listing = Listing.from_json(obj) if isinstance(obj, dict) else None
                if listing is not None and listing.item_id not in known:
                    self.partial_listings.append(listing)
                    known.add(listing.item_id)
        self.partial_payload.update({k: v for k, v in payload.items() if k not in ("stage", "page_one_listings", "products", "listings")})

    async def _commit(self, token: RunToken, result: ResultSet) -> ResultSet | None:
        if not self.is_current(token):
            return None
        # Resolves False instead of raising when a newer run resets progress.
        await self.progress.finish()
        if not self.is_current(token):
            logger.debug(f"Run {token} superseded while finishing; result discarded")
            return None
        self.result = result
        self._advance(token, RunState.COMPLETE)
        logger.info(f"Run {token} committed analysis run {result.run_id} ({len(result.listings)} listings)")
        for listener in list(self._commit_listeners):
            listener(result)
        return result

    def _fail(self, token: RunToken, error: RunFailed) -> None:
        if not self.is_current(token):
            logger.debug(f"Ignoring failure of stale run {token}: {error.message}")
            return
        self.progress.stop()
        self._advance(token, RunState.FAILED)
        if error.kind == "queued":
            self.notice = error.message
            logger.info(f"Run {token} queued: {error.message}")
        else:
            logger.warning(f"Run {token} failed ({error.kind}): {error.message}")
        self.error = error

    def schedule_single_shot_marks(self) -> None:
        for stage, delay in SINGLE_SHOT_MARKS:
            self.progress.mark_later(stage, delay)

    async def close(self) -> None:
        """Tear down timers and any in-flight submission."""
        self.progress.stop()
        tasks = [h.task for h in self.runs.values() if h.task is not None and not h.task.done()]
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.active.set(None)


def _error_message(data: dict[str, Any], status: int) -> str:
    message = data.get("error") or f"Analysis failed ({status})"
    details = data.get("details") or ""
    # Stack traces stay in logs.
    if details and "at " not in details and "Error:" not in details:
        if len(details) > 200:
            details = details[:200] + "..."
        message = f"{message}: {details}"
    return message
