"""Render progress reporting.

The encode backend reports raw completion in [0, 1] with no guarantees: it
may stay at 0 for a while, jump, or even go backwards. ProgressMonitor turns
that into a smooth, non-decreasing stream mapped into the encode stage's span
of overall progress:

- Before the backend reports anything meaningful, a time-based ramp moves the
  bar up to a small ceiling
- Afterwards, the running maximum of the raw value is tracked
- On completion, the bar steps smoothly to 1.0 and a terminal event follows
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from kaption.config import Settings, get_settings
from kaption.render.encoder import EncodeStatus, MediaEncoder

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], Any] | Callable[[str, float], Awaitable[Any]]


class ProgressStage(str, Enum):
    SETUP = "setup"
    LAYOUT = "layout"
    OVERLAY = "overlay"
    ENCODE = "encode"
    COMPLETED = "completed"


@dataclass(frozen=True)
class StageSpan:
    """Slice [start, end] of overall progress owned by one stage."""

    name: ProgressStage
    start: float
    end: float

    def map(self, fraction: float) -> float:
        """Map a stage-local fraction into overall progress."""
        fraction = min(max(fraction, 0.0), 1.0)
        return self.start + fraction * (self.end - self.start)


@dataclass(frozen=True)
class ProgressEvent:
    stage: ProgressStage
    fraction: float


def default_stage_plan(settings: Settings | None = None) -> dict[ProgressStage, StageSpan]:
    """Stage spans used by the render pipeline."""
    settings = settings or get_settings()
    return {
        ProgressStage.SETUP: StageSpan(ProgressStage.SETUP, *settings.stage_setup_span),
        ProgressStage.LAYOUT: StageSpan(ProgressStage.LAYOUT, *settings.stage_layout_span),
        ProgressStage.OVERLAY: StageSpan(ProgressStage.OVERLAY, *settings.stage_overlay_span),
        ProgressStage.ENCODE: StageSpan(ProgressStage.ENCODE, *settings.stage_encode_span),
    }


class ProgressMonitor:
    """Polls an encoder and yields smoothed progress events.

    The monitored stage is the last one of a render, so completion always
    ends the stream at exactly 1.0.

    Usage:
        monitor = ProgressMonitor(encoder, plan[ProgressStage.ENCODE])
        async for event in monitor.events():
            print(event.stage.value, event.fraction)
    """

    def __init__(
        self,
        encoder: MediaEncoder,
        stage: StageSpan | None = None,
        poll_interval: float | None = None,
        *,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.encoder = encoder
        self.stage = stage or default_stage_plan(self.settings)[ProgressStage.ENCODE]
        self.poll_interval = (
            self.settings.progress_poll_interval_s if poll_interval is None else poll_interval
        )
        self._clock = clock
        self._sleep = sleep
        self.highest = 0.0
        self.last_emitted = self.stage.start

    async def events(self) -> AsyncIterator[ProgressEvent]:
        settings = self.settings
        started_at = self._clock()
        tracking_backend = False

        while True:
            status = self.encoder.status()
            if status in (EncodeStatus.FAILED, EncodeStatus.CANCELLED):
                logger.info(f"[PROGRESS] Encoder {status.value}, stopping at {self.last_emitted:.3f}")
                return
            if status == EncodeStatus.COMPLETED:
                break

            raw = self.encoder.progress()
            if not tracking_backend and raw > settings.progress_epsilon:
                tracking_backend = True
                logger.debug(f"[PROGRESS] Backend reported {raw:.3f}, leaving simulated ramp")

            if tracking_backend:
                effective = max(raw, self.highest)
            else:
                elapsed = self._clock() - started_at
                effective = min(
                    settings.progress_simulated_ceiling,
                    elapsed * settings.progress_simulated_rate,
                )
            self.highest = max(self.highest, min(effective, 1.0))

            overall = self.stage.map(self.highest)
            if overall - self.last_emitted >= settings.progress_emit_threshold:
                self.last_emitted = overall
                yield ProgressEvent(self.stage.name, overall)

            await self._sleep(self.poll_interval)

        async for event in self._complete():
            yield event

    async def _complete(self) -> AsyncIterator[ProgressEvent]:
        """Step from the last emission to 1.0, then emit the terminal event."""
        settings = self.settings
        steps = max(1, settings.progress_completion_steps)
        origin = self.last_emitted
        for i in range(1, steps + 1):
            if i == steps:
                await self._sleep(settings.progress_completion_final_delay_s)
                value = 1.0
            else:
                await self._sleep(settings.progress_completion_step_delay_s)
                value = origin + (1.0 - origin) * i / steps
            self.last_emitted = max(self.last_emitted, value)
            yield ProgressEvent(self.stage.name, self.last_emitted)
        self.highest = 1.0
        logger.info("[PROGRESS] Encode complete")
        yield ProgressEvent(ProgressStage.COMPLETED, 1.0)


class StagedProgress:
    """Forwards progress to a caller callback, never letting it go backwards.

    The callback may be a plain function or a coroutine function. After
    :meth:`close` nothing more is forwarded.
    """

    def __init__(self, callback: ProgressCallback | None = None):
        self.callback = callback
        self.last = 0.0
        self.closed = False

    async def report(self, stage: str | ProgressStage, fraction: float) -> None:
        if self.closed or self.callback is None:
            return
        fraction = min(max(fraction, self.last), 1.0)
        self.last = fraction
        stage_name = stage.value if isinstance(stage, ProgressStage) else stage
        result = self.callback(stage_name, fraction)
        if inspect.isawaitable(result):
            await result

    def for_span(self, span: StageSpan) -> Callable[[float], Awaitable[None]]:
        """Callback taking a stage-local fraction, mapped into ``span``."""

        async def report_local(fraction: float) -> None:
            await self.report(span.name, span.map(fraction))

        return report_local

    def close(self) -> None:
        self.closed = True
