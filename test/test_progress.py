from __future__ import annotations

import io
import sys
import threading
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from render_pipeline.progress import ConsoleBar, ProgressAggregator, format_hms


def test_format_hms() -> None:
    assert format_hms(0) == "00:00"
    assert format_hms(75) == "01:15"
    assert format_hms(3725) == "01:02:05"
    assert format_hms(-3) == "00:00"


def test_aggregator_sums_worker_progress() -> None:
    events = []
    with ProgressAggregator(100, lambda done, total: events.append((done, total))) as progress:
        workers = []
        for key in range(4):
            report = progress.reporter(key)

            def run(report=report) -> None:
                for done in range(1, 26):
                    report(done, 25)

            workers.append(threading.Thread(target=run))
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

    assert progress.frames_done == 100
    assert events[-1] == (100, 100)
    assert [done for done, _ in events] == sorted(done for done, _ in events)


def test_console_bar_draws_to_stream() -> None:
    stream = io.StringIO()
    bar = ConsoleBar(total_frames=10, label="Promo", stream=stream)
    bar.update(10)
    bar.finish()
    text = stream.getvalue()
    assert "100%" in text
    assert "10/10 frames" in text
    assert text.endswith("\n")
