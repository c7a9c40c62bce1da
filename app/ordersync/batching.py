from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size < 1:
        raise ValueError("batch size must be >= 1")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


@dataclass
class WaveRun(Generic[R]):
    results: list[R] = field(default_factory=list)
    waves: int = 0
    cancelled: bool = False
    not_started: int = 0


def run_in_waves(
    items: Sequence[T],
    worker: Callable[[T], R],
    *,
    on_error: Callable[[T, BaseException], R],
    batch_size: int,
    concurrency: int,
    max_workers: int,
    pause_seconds: float = 0.0,
    cancel_event: threading.Event | None = None,
    label: str = "BATCH",
) -> WaveRun[R]:
    """
    Process `items` in chunks of `batch_size`, `concurrency` chunks per wave.

    Every item of a wave runs on one shared pool of `max_workers` threads.
    A failure in `worker` is turned into a result by `on_error` and never
    stops its siblings. `cancel_event` is checked before each wave; a wave
    already in flight always finishes. Results keep input order.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    chunks = chunked(items, batch_size)
    waves = [chunks[i : i + concurrency] for i in range(0, len(chunks), concurrency)]
    run: WaveRun[R] = WaveRun()

    if not items:
        return run

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        for n, wave in enumerate(waves, start=1):
            if cancel_event is not None and cancel_event.is_set():
                run.cancelled = True
                run.not_started = sum(len(c) for w in waves[n - 1 :] for c in w)
                logger.warning("%s: cancelled before wave %d/%d, %d items not started", label, n, len(waves), run.not_started)
                break

            wave_items = [item for chunk in wave for item in chunk]
            logger.info("%s: wave %d/%d (%d chunks, %d items)", label, n, len(waves), len(wave), len(wave_items))

            slots: list[R | None] = [None] * len(wave_items)
            futures = {pool.submit(worker, item): idx for idx, item in enumerate(wave_items)}
            for fut in as_completed(futures):
                idx = futures[fut]
                try:
                    slots[idx] = fut.result()
                except Exception as e:
                    logger.exception("%s: worker failed", label)
                    slots[idx] = on_error(wave_items[idx], e)
            run.results.extend(slots)  # type: ignore[arg-type]
            run.waves += 1

            if n < len(waves) and pause_seconds > 0:
                if cancel_event is not None:
                    cancel_event.wait(pause_seconds)
                else:
                    time.sleep(pause_seconds)

    return run
