import logging
import threading

from soundpath.heartbeat import IntervalLoop


def test_run_once_counts_and_logs_failures(caplog):
    caplog.set_level(logging.ERROR, logger="soundpath.heartbeat")

    def _fail():
        raise RuntimeError("sweep exploded")

    loop = IntervalLoop(name="release-sweep", interval_s=60, fn=_fail)

    assert loop.run_once() is False
    assert loop.stats.as_dict() == {"runs": 1, "failures": 1}
    assert "release-sweep iteration failed" in caplog.text


def test_loop_keeps_running_after_a_failure_and_stops_cleanly():
    ticks = []
    done = threading.Event()

    def _tick():
        ticks.append(1)
        if len(ticks) == 1:
            raise RuntimeError("first run fails")
        done.set()

    loop = IntervalLoop(name="usage-recheck", interval_s=0.01, fn=_tick)
    loop.start()
    assert done.wait(timeout=5.0)
    loop.stop()

    assert loop.running is False
    assert loop.stats.failures == 1
    assert loop.stats.runs >= 2


def test_start_is_idempotent_and_wait_reports_stop():
    loop = IntervalLoop(name="noop", interval_s=30, fn=lambda: None)
    loop.start()
    first_thread = loop._thread
    loop.start()

    assert loop._thread is first_thread
    assert loop.wait(0.01) is False
    loop.stop()
    assert loop.wait(0.01) is True
