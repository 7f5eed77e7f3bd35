"""
Tests for the Outbox background worker
"""
import threading

from cyclehub.ingest.rules.outbox import Outbox


def test_jobs_run_in_submission_order(outbox):
    seen = []
    for i in range(20):
        outbox.submit(f"job{i}", lambda i=i: seen.append(i))
    assert outbox.flush(5)
    assert seen == list(range(20))
    assert outbox.pending == 0


def test_on_done_receives_result(outbox):
    results = []
    outbox.submit("ok", lambda: 42, on_done=lambda ok, res: results.append((ok, res)))
    assert outbox.flush(5)
    assert results == [(True, 42)]


def test_failing_job_reports_exception_and_worker_survives(outbox):
    results = []

    def boom():
        raise RuntimeError("db down")

    outbox.submit("boom", boom, on_done=lambda ok, res: results.append((ok, res)))
    outbox.submit("after", lambda: "still alive", on_done=lambda ok, res: results.append((ok, res)))
    assert outbox.flush(5)

    assert results[0][0] is False
    assert isinstance(results[0][1], RuntimeError)
    assert results[1] == (True, "still alive")


def test_failing_on_done_does_not_break_worker(outbox):
    seen = []

    def bad_callback(ok, res):
        raise ValueError("callback bug")

    outbox.submit("a", lambda: 1, on_done=bad_callback)
    outbox.submit("b", lambda: seen.append("b"))
    assert outbox.flush(5)
    assert seen == ["b"]


def test_jobs_submitted_from_on_done_are_awaited_by_flush(outbox):
    seen = []

    def chain(ok, res):
        outbox.submit("second", lambda: seen.append("second"))

    outbox.submit("first", lambda: seen.append("first"), on_done=chain)
    assert outbox.flush(5)
    assert seen == ["first", "second"]


def test_flush_times_out_while_job_blocks():
    ob = Outbox()
    gate = threading.Event()
    ob.submit("blocked", lambda: gate.wait(5))
    try:
        assert ob.flush(0.05) is False
    finally:
        gate.set()
        assert ob.flush(5)
        ob.stop()


def test_stop_drains_and_rejects_new_jobs():
    ob = Outbox()
    seen = []
    ob.submit("x", lambda: seen.append("x"))
    ob.stop()
    assert seen == ["x"]
    assert ob.submit("late", lambda: seen.append("late")) is False
    assert seen == ["x"]
