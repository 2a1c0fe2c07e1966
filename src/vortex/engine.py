"""
Crawl engine: wires Scheduler, Downloader, Parser and the pipeline sink
together and drives the crawl lifecycle.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import structlog

from vortex.config.config import Config
from vortex.downloader.downloader import Downloader
from vortex.exceptions import CriticalSinkError, EngineStateError
from vortex.parser.parser import ParseResult, Parser
from vortex.protocols import (
    CrawlEvent,
    ErrorInfo,
    ErrorSeverity,
    EventKind,
    Outcome,
    OutcomeKind,
    PipelineSink,
    Record,
    Request,
)
from vortex.scheduler.scheduler import Scheduler
from vortex.sinks import MemorySink
from vortex.spider import Spider
from vortex.stats import CrawlStats

EventHandler = Callable[[CrawlEvent], Any]


class EngineState(Enum):
    """Lifecycle of a Crawler; STOPPED is terminal."""

    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    CANCELLING = "cancelling"
    STOPPED = "stopped"


@dataclass
class CrawlSummary:
    """What a finished crawl reports back."""

    spider: str
    crawl_id: str
    state: EngineState
    reason: str
    started_at: datetime
    finished_at: datetime
    duration: float
    stats: Dict[str, Any]
    scheduler: Dict[str, Any]
    failures: List[CrawlEvent] = field(default_factory=list)

    @property
    def records(self) -> int:
        return int(self.stats.get("records", 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "spider": self.spider,
            "crawl_id": self.crawl_id,
            "state": self.state.value,
            "reason": self.reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration": round(self.duration, 3),
            "stats": self.stats,
            "scheduler": self.scheduler,
            "failures": [{"kind": e.kind.value, "url": e.url} for e in self.failures],
        }


class Crawler:
    """Runs one spider to quiescence, or until stopped.

    A Crawler is single-use: once STOPPED it cannot be restarted.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        sink: Optional[PipelineSink] = None,
        *,
        logger: Optional[Any] = None,
        on_event: Optional[EventHandler] = None,
        downloader: Optional[Downloader] = None,
    ) -> None:
        self.config = config
        self.sink: PipelineSink = sink if sink is not None else MemorySink()
        self.logger = logger or structlog.get_logger("vortex.engine")
        self.on_event = on_event
        self.state = EngineState.IDLE

        self.stats = CrawlStats()
        self.events: List[CrawlEvent] = []
        self.scheduler: Optional[Scheduler] = None
        self.parser: Optional[Parser] = None

        self._downloader = downloader
        self._tasks: Dict[asyncio.Task[None], Request] = {}
        self._unreported: set[asyncio.Task[None]] = set()
        self._wakeup: Optional[asyncio.Event] = None
        self._records: Optional[asyncio.Queue[Optional[Record]]] = None
        self._delivery: Optional[asyncio.Task[None]] = None
        self._grace_period: Optional[float] = None
        self._fatal: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self, spider: Spider) -> CrawlSummary:
        """
        Crawl until the scheduler is quiescent or the crawl is stopped.

        Raises:
            ConfigurationError: the spider or its rules are invalid.
            EngineStateError: the crawler has already been started.
            CriticalSinkError: a critical sink failed to accept a record.
        """
        if self.state is not EngineState.IDLE:
            raise EngineStateError(f"crawler cannot run from state {self.state.value}")
        spider.validate()

        config = self.config or spider.config
        self.config = config
        crawl_id = uuid4().hex[:12]
        log = self.logger.bind(spider=spider.name, crawl_id=crawl_id)

        self.scheduler = Scheduler.from_config(config)
        self.parser = Parser(spider.rules)
        self._wakeup = asyncio.Event()
        self._records = asyncio.Queue()
        self.state = EngineState.RUNNING

        started_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        owns_downloader = self._downloader is None
        if self._downloader is None:
            self._downloader = Downloader(config.downloader)
        downloader = self._downloader
        reason = "finished"

        log.info(
            "Crawl started",
            start_requests=len(spider.start_requests),
            rules=len(spider.rules),
            strategy=config.scheduler.strategy.value,
            concurrency=config.downloader.concurrency,
        )
        try:
            with structlog.contextvars.bound_contextvars(crawl_id=crawl_id):
                self._delivery = asyncio.create_task(self._deliver_records(), name="deliver")
                await downloader.initialize()
                for request in spider.start_requests:
                    self.scheduler.admit(request)
                await self._crawl_loop(config.downloader.concurrency)
                reason = await self._finish(config.engine.drain_timeout, log)
        finally:
            await self._stop_delivery()
            if owns_downloader:
                await downloader.close()
            self.state = EngineState.STOPPED

        duration = time.perf_counter() - started
        summary = CrawlSummary(
            spider=spider.name,
            crawl_id=crawl_id,
            state=self.state,
            reason="failed" if self._fatal else reason,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            duration=duration,
            stats=self.stats.to_dict(),
            scheduler=self.scheduler.stats(),
            failures=[e for e in self.events if e.kind is EventKind.FETCH_TERMINAL_FAILURE],
        )
        self.scheduler.close()
        log.info(
            "Crawl stopped",
            reason=summary.reason,
            duration=round(duration, 3),
            dispatched=self.stats.dispatched,
            records=self.stats.records,
            pending=summary.scheduler["frontier_size"],
        )

        if self._fatal is not None:
            raise self._fatal
        return summary

    def request_stop(self, grace_period: Optional[float] = None) -> None:
        """Stop pulling new work and let in-flight requests finish.

        In-flight requests still running after the grace period (default:
        ``engine.drain_timeout``) are cancelled.
        """
        if self.state is not EngineState.RUNNING:
            self.logger.debug("Stop ignored", state=self.state.value)
            return
        self.state = EngineState.DRAINING
        self._grace_period = grace_period
        self.logger.info("Draining crawl", in_flight=len(self._tasks), grace_period=grace_period)
        self._wake()

    def cancel(self) -> None:
        """Cancel all in-flight work immediately."""
        if self.state not in (EngineState.RUNNING, EngineState.DRAINING):
            self.logger.debug("Cancel ignored", state=self.state.value)
            return
        self.state = EngineState.CANCELLING
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if self._delivery is not None and self._delivery is not current:
            self._delivery.cancel()
        self.logger.info("Cancelling crawl", in_flight=len(self._tasks))
        self._wake()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _crawl_loop(self, concurrency: int) -> None:
        assert self.scheduler is not None and self._wakeup is not None
        scheduler = self.scheduler

        while self.state is EngineState.RUNNING:
            self._wakeup.clear()
            while len(self._tasks) < concurrency:
                request = scheduler.next()
                if request is None:
                    break
                self._spawn(request)

            if scheduler.is_quiescent():
                break

            timeout = scheduler.next_eligible_in()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    async def _finish(self, drain_timeout: float, log: Any) -> str:
        tasks = list(self._tasks)
        if self.state is EngineState.RUNNING:
            # Quiescent: nothing is in flight, only queued records remain.
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            await self._close_delivery()
            return self._stop_reason()

        if self.state is EngineState.DRAINING:
            grace = drain_timeout if self._grace_period is None else self._grace_period
            deadline = time.perf_counter() + grace
            if tasks:
                _done, pending = await asyncio.wait(tasks, timeout=grace)
                if pending:
                    log.warning("Drain timeout reached, cancelling in-flight requests", pending=len(pending))
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
            if self.state is EngineState.DRAINING:
                await self._close_delivery(max(0.0, deadline - time.perf_counter()))
                return self._stop_reason()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._stop_delivery()
        return "cancelled"

    def _stop_reason(self) -> str:
        # A stop or cancel may arrive while queued records are still being delivered.
        return {EngineState.RUNNING: "finished", EngineState.DRAINING: "drained"}.get(self.state, "cancelled")

    def _spawn(self, request: Request) -> None:
        self.stats.record_dispatch()
        task = asyncio.create_task(self._process(request), name=f"fetch:{request.url}")
        self._tasks[task] = request
        self._unreported.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        request = self._tasks.pop(task, None)
        if task in self._unreported and request is not None:
            # Cancelled before its first step; the outcome still has to be reported.
            self._unreported.discard(task)
            self._complete(request, Outcome.cancelled(request, reason=self._cancel_reason()))
        if not task.cancelled() and task.exception() is not None and self._fatal is None:
            exc = task.exception()
            self.logger.error("Crawl task crashed", error_type=type(exc).__name__, error=str(exc))
            self._fatal = exc
            self.cancel()
        self._wake()

    def _cancel_reason(self) -> str:
        return "drain timeout" if self.state is EngineState.DRAINING else "cancelled"

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    # ------------------------------------------------------------------
    # Per-request processing
    # ------------------------------------------------------------------

    async def _process(self, request: Request) -> None:
        task = asyncio.current_task()
        started = time.perf_counter()
        try:
            outcome = await self._fetch(request)
        except asyncio.CancelledError:
            self._unreported.discard(task)  # type: ignore[arg-type]
            self._complete(request, Outcome.cancelled(request, time.perf_counter() - started, self._cancel_reason()))
            raise

        self._unreported.discard(task)  # type: ignore[arg-type]
        result = self._complete(request, outcome)
        self._wake()
        if result is None or self.state is EngineState.CANCELLING:
            return
        assert self._records is not None
        for record in result.records:
            self._records.put_nowait(record)

    async def _fetch(self, request: Request) -> Outcome:
        try:
            return await self._active_downloader.fetch(request)
        except Exception as exc:
            self.logger.error("Unexpected fetch error", url=request.url, error_type=type(exc).__name__, error=str(exc))
            return Outcome(
                request=request,
                kind=OutcomeKind.TERMINAL_FAILURE,
                error=ErrorInfo.from_exception(exc, severity=ErrorSeverity.HIGH),
            )

    @property
    def _active_downloader(self) -> Downloader:
        if self._downloader is None:
            raise EngineStateError("no downloader bound to the crawler")
        return self._downloader

    def _complete(self, request: Request, outcome: Outcome) -> Optional[ParseResult]:
        """Report the outcome, then parse and admit follow-ups. Never suspends."""
        assert self.scheduler is not None and self.parser is not None
        transition = self.scheduler.report_outcome(request, outcome)
        self.stats.record_outcome(outcome)
        if transition is not None:
            self._emit(CrawlEvent(kind=transition, url=request.url, host=request.host))

        if outcome.kind is OutcomeKind.REDIRECT and outcome.redirect is not None:
            self.scheduler.admit(outcome.redirect)
            return None
        if outcome.kind is OutcomeKind.SOFT_FAILURE:
            self._emit(self._failure_event(EventKind.FETCH_SOFT_FAILURE, outcome))
            return None
        if outcome.kind is OutcomeKind.TERMINAL_FAILURE:
            self._emit(self._failure_event(EventKind.FETCH_TERMINAL_FAILURE, outcome))
            return None
        if outcome.kind is not OutcomeKind.SUCCESS or outcome.response is None:
            return None

        result = self.parser.parse(outcome.response)
        for discovered in result.requests:
            if self.scheduler.admit(discovered):
                self.stats.discovered += 1
        for failure in result.failures:
            self.stats.record_extraction_failure()
            self._emit(
                CrawlEvent(
                    kind=EventKind.EXTRACTION_FAILURE,
                    url=failure.url,
                    host=request.host,
                    error=failure.error,
                    details={"rule": failure.rule},
                )
            )
        return result

    async def _deliver_records(self) -> None:
        """Single consumer: records reach the sink one at a time, in queue order."""
        assert self._records is not None
        while True:
            record = await self._records.get()
            if record is None or self.state is EngineState.CANCELLING:
                return
            await self._deliver(record)

    async def _deliver(self, record: Record) -> None:
        try:
            await self.sink.accept(record)
        except Exception as exc:
            self.stats.record_sink_failure()
            self._emit(
                CrawlEvent(
                    kind=EventKind.SINK_FAILURE,
                    url=record.url,
                    error=ErrorInfo.from_exception(exc, severity=ErrorSeverity.HIGH),
                )
            )
            if self._sink_is_critical() and self._fatal is None:
                fatal = CriticalSinkError(f"critical sink failed on {record.url}: {exc}")
                fatal.__cause__ = exc
                self._fatal = fatal
                self.cancel()
            return
        self.stats.record_emitted()

    async def _close_delivery(self, timeout: Optional[float] = None) -> None:
        """Deliver what is queued, giving up after ``timeout`` seconds."""
        if self._delivery is None or self._records is None:
            return
        self._records.put_nowait(None)
        _done, pending = await asyncio.wait({self._delivery}, timeout=timeout)
        if pending:
            self.logger.warning("Delivery timeout reached, dropping queued records", queued=self._records.qsize())
        await self._stop_delivery()

    async def _stop_delivery(self) -> None:
        delivery = self._delivery
        if delivery is None:
            return
        if not delivery.done():
            delivery.cancel()
        await asyncio.gather(delivery, return_exceptions=True)
        if not delivery.cancelled() and delivery.exception() is not None and self._fatal is None:
            self.logger.error("Record delivery crashed", error=str(delivery.exception()))
            self._fatal = delivery.exception()

    def _sink_is_critical(self) -> bool:
        config_critical = bool(self.config and self.config.pipeline.sink_critical)
        return config_critical or bool(getattr(self.sink, "critical", False))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _failure_event(self, kind: EventKind, outcome: Outcome) -> CrawlEvent:
        return CrawlEvent(
            kind=kind,
            url=outcome.request.url,
            host=outcome.request.host,
            error=outcome.error,
            details={
                "status": outcome.status.value if outcome.status else None,
                "attempts": outcome.attempts,
            },
        )

    def _emit(self, event: CrawlEvent) -> None:
        self.events.append(event)
        level = "warning" if event.kind is not EventKind.FETCH_SOFT_FAILURE else "info"
        getattr(self.logger, level)(
            "crawl_event",
            kind=event.kind.value,
            url=event.url,
            error=event.error.error_message if event.error else None,
        )
        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception as exc:
                self.logger.error("Event handler failed", kind=event.kind.value, error=str(exc))
