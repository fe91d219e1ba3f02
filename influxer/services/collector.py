from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable, List, Optional, Union

from ..errors import ClientError, MetricsError
from ..metrics.base import Metrics

logger = logging.getLogger(__name__)

Sampler = Callable[[], Union[Metrics, Iterable[Metrics], None]]


class MetricCollector:
    """Background task that periodically samples metrics and writes them."""

    def __init__(self, samplers: Iterable[Sampler], interval_seconds: float) -> None:
        self.samplers = list(samplers)
        self.interval_seconds = max(interval_seconds, 1)
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self._run(), name="metric-collector")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.collect_once()
            except Exception:
                logger.exception("Metric collection failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def collect_once(self) -> List[Metrics]:
        return await asyncio.to_thread(self._collect_once)

    def _sample(self, sampler: Sampler) -> List[Metrics]:
        try:
            result = sampler()
            if result is None:
                return []
            if isinstance(result, Metrics):
                return [result]
            samples = list(result)
        except Exception:
            logger.exception("Sampler %r failed", sampler)
            return []
        metrics = [sample for sample in samples if isinstance(sample, Metrics)]
        if len(metrics) != len(samples):
            logger.warning("Sampler %r returned values that are not metrics", sampler)
        return metrics

    def _collect_once(self) -> List[Metrics]:
        written: List[Metrics] = []
        for sampler in self.samplers:
            for metric in self._sample(sampler):
                try:
                    if metric.write() is False:
                        logger.warning(
                            "Skipping %s: %s",
                            type(metric).__qualname__,
                            "; ".join(metric.errors.full_messages()) or "write halted",
                        )
                        continue
                except (ClientError, MetricsError) as exc:
                    logger.warning("Writing %s failed: %s", type(metric).__qualname__, exc)
                    continue
                written.append(metric)
        return written
