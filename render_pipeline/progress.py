from __future__ import annotations

import queue
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Optional, TextIO

ProgressCallback = Callable[[int, int], None]


def format_hms(seconds: float) -> str:
    if seconds < 0:
        seconds = 0
    seconds = int(round(seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h:02d}:{m:02d}:{s:02d}"
    return f"{m:02d}:{s:02d}"


@dataclass
class ConsoleBar:
    total_frames: int
    label: str = "Render"
    width: int = 24
    stream: TextIO = sys.stderr

    def __post_init__(self) -> None:
        self.start_time = time.time()
        self.last_render = 0.0
        self.current = 0
        self._draw(0)

    def update(self, frames_done: int, total: Optional[int] = None) -> None:
        if total is not None:
            self.total_frames = total
        self.current = frames_done
        now = time.time()
        # Rate-limit updates to avoid flicker (10 fps max).
        if now - self.last_render < 0.1 and frames_done < self.total_frames:
            return
        self.last_render = now
        self._draw(frames_done)

    def finish(self) -> None:
        self._draw(self.current)
        self.stream.write("\n")
        self.stream.flush()

    # ------------------------------------------------------------------
    def _draw(self, frames_done: int) -> None:
        total = max(self.total_frames, 1)
        cur = min(max(frames_done, 0), total)
        frac = cur / total
        filled = int(round(self.width * frac))
        bar = "█" * filled + "·" * (self.width - filled)
        elapsed = time.time() - self.start_time
        eta = 0.0 if frac <= 0.0001 else elapsed * (1.0 / frac - 1.0)
        msg = (
            f"[{bar}] {int(frac*100):3d}% | "
            f"{cur}/{total} frames | "
            f"{format_hms(elapsed)} | ETA {format_hms(eta)} | {self.label}"
        )
        self.stream.write("\r" + msg)
        self.stream.flush()


_STOP = object()


class ProgressAggregator:
    """Fold per-worker progress events into one overall count.

    Workers push ``(key, done, total)`` events onto a queue from their own
    threads; a single consumer thread keeps the per-worker totals and calls
    ``on_progress(done, total)``. Use as a context manager so the consumer
    is drained and joined on exit.
    """

    def __init__(self, total: int, on_progress: Optional[ProgressCallback] = None) -> None:
        self.total = total
        self.on_progress = on_progress
        self._events: "queue.Queue[object]" = queue.Queue()
        self._done: Dict[Hashable, int] = {}
        self._thread: Optional[threading.Thread] = None

    @property
    def frames_done(self) -> int:
        return sum(self._done.values())

    def reporter(self, key: Hashable) -> ProgressCallback:
        def report(done: int, total: int) -> None:
            self._events.put((key, done, total))

        return report

    def start(self) -> "ProgressAggregator":
        if self._thread is None:
            self._thread = threading.Thread(target=self._consume, name="progress", daemon=True)
            self._thread.start()
        return self

    def stop(self) -> None:
        if self._thread is None:
            return
        self._events.put(_STOP)
        self._thread.join()
        self._thread = None

    def __enter__(self) -> "ProgressAggregator":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _consume(self) -> None:
        while True:
            event = self._events.get()
            if event is _STOP:
                return
            key, done, _ = event  # type: ignore[misc]
            self._done[key] = done
            if self.on_progress is not None:
                self.on_progress(self.frames_done, self.total)
