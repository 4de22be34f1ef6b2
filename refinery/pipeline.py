from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from refinery.config import PipelineSettings
from refinery.events import FRAGMENT_CREATED, PIPELINE_COMPLETED, PIPELINE_STARTED, EventBus
from refinery.fragments import SOURCE_TRANSCRIPTION, TAG_RAW, Fragment, FragmentStore, raw_transcript_fragments
from refinery.logs import log_important
from refinery.materializer import materialize_chunk
from refinery.planner import plan_batch
from refinery.resegment import CompleteFn, SleepFn, resegment_chunk

logger = logging.getLogger(__name__)


@dataclass
class PipelineState:
    running: bool = False
    first_raw_at: Optional[float] = None
    pending_flush: bool = False
    # Consecutive completed runs that skipped a chunk; spaces out follow-ups.
    skip_streak: int = 0
    # Diagnostics only; trigger decisions never read these.
    runs_started: int = 0
    runs_completed: int = 0
    runs_deferred: int = 0
    runs_failed: int = 0
    chunks_skipped: int = 0
    last_batch_id: Optional[str] = None

    def reset(self) -> None:
        self.running = False
        self.first_raw_at = None
        self.pending_flush = False
        self.skip_streak = 0

    def snapshot(self) -> dict:
        return asdict(self)


@dataclass
class RunOutcome:
    status: str  # "completed", "deferred", "failed"
    batch_id: Optional[str] = None
    raw_count: int = 0
    clean_count: int = 0
    chunks_total: int = 0
    chunks_skipped: int = 0


class TranscriptPipeline:
    """
    Per-session transcript cleanup service.

    Raw transcription fragments accumulate in the store; a run is started by the count
    trigger (new raw fragment), the poll loop (idle backlog), an explicit flush, or a
    follow-up scheduled when a run ends with leftovers. Every path goes through
    `_try_start`, the only place the single-flight `running` flag is checked and set.
    """

    def __init__(
        self,
        store: FragmentStore,
        bus: EventBus,
        complete: CompleteFn,
        *,
        session_id: str,
        column_id: str,
        settings: PipelineSettings | None = None,
        has_credential: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.store = store
        self.bus = bus
        self.session_id = session_id
        self.column_id = column_id
        self.settings = settings or PipelineSettings()
        self.state = PipelineState()

        self._complete = complete
        self._has_credential = has_credential or (lambda: True)
        self._clock = clock
        self._sleep = sleep

        self._started = False
        self._closed = False
        self._poll_task: asyncio.Task | None = None
        self._run_task: asyncio.Task | None = None
        self._resume_handle: asyncio.TimerHandle | None = None
        self._followup_handle: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._started or self._closed:
            return
        loop = asyncio.get_running_loop()
        self._started = True
        self.bus.on(FRAGMENT_CREATED, self._on_fragment_created)
        self._poll_task = loop.create_task(self._poll_loop())
        self._resume_handle = loop.call_later(self.settings.resume_delay_seconds, self.check_resume)
        logger.debug("Transcript pipeline started for session %s", self.session_id)

    async def stop(self) -> None:
        self._closed = True
        self.bus.off(FRAGMENT_CREATED, self._on_fragment_created)
        for handle in (self._resume_handle, self._followup_handle):
            if handle is not None:
                handle.cancel()
        self._resume_handle = None
        self._followup_handle = None

        tasks = [t for t in (self._poll_task, self._run_task) if t is not None and not t.done()]
        current = asyncio.current_task()
        for t in tasks:
            if t is not current:
                t.cancel()
        for t in tasks:
            if t is current:
                continue
            with suppress(asyncio.CancelledError):
                await t
        self._poll_task = None
        self._run_task = None
        self.state.reset()
        logger.debug("Transcript pipeline stopped for session %s", self.session_id)

    def update_settings(self, settings: PipelineSettings) -> None:
        self.settings = settings

    @property
    def running(self) -> bool:
        return self.state.running

    @property
    def closed(self) -> bool:
        return self._closed

    def raw_backlog(self) -> list[Fragment]:
        return raw_transcript_fragments(self.store, session_id=self.session_id, column_id=self.column_id)

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until no run is active and no follow-up is pending."""
        deadline = time.monotonic() + float(timeout)
        while self.state.running or self._followup_handle is not None:
            if time.monotonic() >= deadline:
                raise asyncio.TimeoutError("transcript pipeline did not settle")
            await asyncio.sleep(0.01)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _on_fragment_created(self, payload: dict) -> None:
        fragment = payload.get("fragment")
        if fragment is None or self._closed:
            return
        if fragment.source != SOURCE_TRANSCRIPTION or TAG_RAW not in fragment.tags:
            return
        if fragment.session_id != self.session_id or fragment.column_id != self.column_id:
            return

        if self.state.first_raw_at is None:
            self.state.first_raw_at = self._clock()
        if self.state.running:
            return
        self._try_start("count", min_count=self.settings.min_raw_fragments)

    def check_time_trigger(self) -> asyncio.Task | None:
        """Poll-tick check; starts a run for a flushed, full, or idle-expired backlog."""
        if self._closed or self.state.running:
            return None

        backlog = self.raw_backlog()
        if not backlog:
            self.state.first_raw_at = None
            return None

        if self.state.pending_flush:
            self.state.pending_flush = False
            return self._try_start("flush")
        if len(backlog) >= self.settings.min_raw_fragments:
            return self._try_start("count", min_count=self.settings.min_raw_fragments)

        now = self._clock()
        if self.state.first_raw_at is None:
            self.state.first_raw_at = now
            return None
        elapsed = now - self.state.first_raw_at
        if elapsed < self.settings.idle_trigger_seconds:
            return None
        if len(backlog) < self.settings.idle_min_fragments:
            return None
        logger.debug("Idle trigger: %s raw fragments after %.0fs", len(backlog), elapsed)
        return self._try_start("idle", min_count=self.settings.idle_min_fragments)

    def check_resume(self) -> None:
        """Re-arm the idle timer for raw fragments left over from an interrupted session."""
        self._resume_handle = None
        if self._closed:
            return
        backlog = self.raw_backlog()
        if not backlog:
            return
        if self.state.first_raw_at is None:
            self.state.first_raw_at = self._clock()
        log_important("pipeline.resume", session=self.session_id, raw=len(backlog))

    async def flush(self) -> RunOutcome | None:
        """Process whatever raw backlog exists now, or queue it behind the active run."""
        if self._closed:
            return None
        if self.state.running:
            self.state.pending_flush = True
            logger.debug("Flush requested during active run; queued")
            return None
        task = self._try_start("flush")
        if task is None:
            return None
        # A cancelled caller must not abort the run mid-chunk; only stop() cancels it.
        return await asyncio.shield(task)

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.poll_seconds)
            try:
                self.check_time_trigger()
            except Exception:
                logger.exception("Transcript pipeline poll check failed")

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _try_start(self, reason: str, *, min_count: int = 1) -> asyncio.Task | None:
        if self._closed or self.state.running:
            return None
        backlog = self.raw_backlog()
        if len(backlog) < max(1, int(min_count)):
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Transcript pipeline trigger %s fired outside the event loop; ignored", reason)
            return None

        self.state.running = True
        self._run_task = loop.create_task(self._run(backlog, reason))
        return self._run_task

    async def _run(self, backlog: list[Fragment], reason: str) -> RunOutcome:
        outcome = RunOutcome(status="failed", raw_count=len(backlog))
        try:
            self.state.first_raw_at = None

            if not self._has_credential():
                self.state.runs_deferred += 1
                log_important(
                    "pipeline.deferred",
                    level=logging.WARNING,
                    dedupe_key=self.session_id,
                    dedupe_window_s=60.0,
                    reason="no-credential",
                    raw=len(backlog),
                )
                outcome = RunOutcome(status="deferred", raw_count=len(backlog))
                return outcome

            batch = plan_batch(backlog, self.settings.max_chunk_fragments)
            outcome.batch_id = batch.id
            outcome.chunks_total = len(batch.chunks)
            self.state.runs_started += 1
            self.state.last_batch_id = batch.id
            log_important(
                "pipeline.started",
                batch=batch.id,
                trigger=reason,
                raw=batch.size,
                chunks=len(batch.chunks),
            )
            self.bus.emit(PIPELINE_STARTED, {"batch_id": batch.id, "raw_count": batch.size})

            clean_count = 0
            skipped = 0
            for chunk in batch.chunks:
                if chunk.index > 0 and self.settings.inter_chunk_delay_seconds > 0:
                    await self._sleep(self.settings.inter_chunk_delay_seconds)

                sections = await resegment_chunk(
                    chunk,
                    self._complete,
                    settings=self.settings,
                    sleep=self._sleep,
                )
                created = []
                if sections:
                    created = materialize_chunk(
                        self.store,
                        chunk,
                        sections,
                        session_id=self.session_id,
                        column_id=self.column_id,
                    )
                if not created:
                    skipped += 1
                    self.state.chunks_skipped += 1
                    log_important(
                        "pipeline.chunk.skipped",
                        level=logging.WARNING,
                        batch=batch.id,
                        chunk=chunk.index,
                        raw=len(chunk),
                    )
                    continue

                clean_count += len(created)
                outcome.clean_count = clean_count

            outcome = RunOutcome(
                status="completed",
                batch_id=batch.id,
                raw_count=batch.size,
                clean_count=clean_count,
                chunks_total=len(batch.chunks),
                chunks_skipped=skipped,
            )
            self.state.runs_completed += 1
            self.state.skip_streak = self.state.skip_streak + 1 if skipped else 0
            log_important(
                "pipeline.completed",
                batch=batch.id,
                clean=clean_count,
                raw=batch.size,
                skipped=skipped,
            )
            self.bus.emit(PIPELINE_COMPLETED, {"batch_id": batch.id, "clean_count": clean_count})
            return outcome
        except Exception:
            logger.exception("Transcript pipeline run failed (batch=%s)", outcome.batch_id)
            self.state.runs_failed += 1
            outcome.status = "failed"
            return outcome
        finally:
            self.state.running = False
            if not self._closed:
                self._reconcile(outcome)

    def _reconcile(self, outcome: RunOutcome) -> None:
        remaining = self.raw_backlog()
        if not remaining:
            self.state.first_raw_at = None
            self.state.pending_flush = False
            return

        if outcome.status == "deferred":
            # The poll loop re-checks the credential; a pending flush waits for it there.
            self.state.first_raw_at = self._clock()
            return

        if self.state.pending_flush:
            self.state.pending_flush = False
            self._schedule_followup("flush", remaining=len(remaining))
            return

        # A failed run falls through to the idle timer, like a missing credential.
        if outcome.status == "completed" and len(remaining) >= self.settings.min_raw_fragments:
            self._schedule_followup("count", remaining=len(remaining), delay=self._followup_delay())
            return

        self.state.first_raw_at = self._clock()

    def _followup_delay(self) -> float:
        """
        Delay before a count follow-up. The first run after a skipping run goes right
        away; further consecutive skipping runs back off exponentially, capped at the
        idle window, so a chunk the model always rejects cannot spin the loop.
        """
        base = self.settings.followup_delay_seconds
        streak = self.state.skip_streak
        if streak <= 1:
            return base
        backoff = self.settings.retry_base_delay_seconds * (2 ** (streak - 1))
        return max(base, min(backoff, self.settings.idle_trigger_seconds))

    def _schedule_followup(self, reason: str, *, remaining: int, delay: float | None = None) -> None:
        if self._followup_handle is not None:
            return
        if delay is None:
            delay = self.settings.followup_delay_seconds
        loop = asyncio.get_running_loop()
        self._followup_handle = loop.call_later(delay, self._run_followup, reason)
        log_important("pipeline.followup", trigger=reason, remaining=remaining, delay_s=round(delay, 3))

    def _run_followup(self, reason: str) -> None:
        self._followup_handle = None
        if self._closed:
            return
        min_count = self.settings.min_raw_fragments if reason == "count" else 1
        task = self._try_start(reason, min_count=min_count)
        if task is None and self.state.first_raw_at is None and self.raw_backlog():
            self.state.first_raw_at = self._clock()
