import time

from conftest import RecordingSink, make_settings, wait_for
from unsealer.notifier import REPORT_HEADER, NotificationAggregator, format_report
from unsealer.runtime import ErrorEvent


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _agg(sink, clock=None, **kw):
    st = make_settings(**kw)
    return NotificationAggregator(sink, lambda: st, clock=clock or Clock())


def _messages(body):
    return [line.split(" :: ", 1)[1] for line in body.splitlines() if " :: " in line]


def test_flush_with_empty_queue_is_noop():
    sink = RecordingSink()
    agg = _agg(sink)
    assert agg.flush() is False
    assert sink.batches == []


def test_event_flushes_once_oldest_exceeds_max_elapsed():
    sink = RecordingSink()
    clock = Clock()
    agg = _agg(sink, clock, notify_max_elapsed=60.0, environment="prod")

    agg.on_event(ErrorEvent(clock.now, "first"))
    clock.now += 30
    agg.on_event(ErrorEvent(clock.now, "second"))
    assert sink.batches == []

    clock.now += 31
    agg.on_event(ErrorEvent(clock.now, "third"))

    assert len(sink.batches) == 1
    body, subject = sink.batches[0]
    assert _messages(body) == ["error: first", "error: second", "error: third"]
    assert subject == "vault-unsealer: prod: 3 errors occurred"
    assert agg.pending == []


def test_batches_preserve_order_without_loss_or_duplication():
    sink = RecordingSink()
    clock = Clock()
    agg = _agg(sink, clock, notify_max_elapsed=600.0)

    emitted = []
    for i in range(10):
        msg = f"event {i}"
        emitted.append(f"error: {msg}")
        agg.on_event(ErrorEvent(clock.now, msg))
        clock.now += 1
        if i in (2, 6):
            agg.flush()
    agg.flush()
    agg.flush()

    assert len(sink.batches) == 3
    flushed = [m for body, _ in sink.batches for m in _messages(body)]
    assert flushed == emitted


def test_failed_delivery_is_not_requeued():
    sink = RecordingSink(fail=True)
    agg = _agg(sink)
    agg.on_event(ErrorEvent(0.0, "boom"))
    assert agg.flush() is True
    assert agg.pending == []
    assert agg.flush() is False
    assert len(sink.batches) == 1


def test_quiet_period_flushes_burst_as_one_batch():
    sink = RecordingSink()
    st = make_settings(notify_queue_delay=0.2, notify_max_elapsed=600.0)
    agg = NotificationAggregator(sink, lambda: st)
    agg.start()
    try:
        for i in range(3):
            agg.notify(f"burst {i}", address="http://vault-0:8200")
        assert wait_for(lambda: len(sink.batches) == 1)
        assert _messages(sink.batches[0][0]) == ["error: burst 0", "error: burst 1", "error: burst 2"]
    finally:
        agg.stop(timeout=5)
    assert len(sink.batches) == 1


def test_shutdown_performs_final_flush():
    sink = RecordingSink()
    st = make_settings(notify_queue_delay=60.0)
    agg = NotificationAggregator(sink, lambda: st)
    agg.start()
    agg.notify("one")
    agg.notify("two", level="info")
    agg.stop(timeout=5)

    assert len(sink.batches) == 1
    assert _messages(sink.batches[0][0]) == ["error: one", "info: two"]


def test_notify_writes_to_journal(journal):
    sink = RecordingSink()
    agg = _agg(sink)
    agg.notify("checking seal status: HTTP 503", address="http://vault-1:8200")
    rows = journal.latest_events(10)
    assert rows[0]["level"] == "ERROR"
    assert rows[0]["address"] == "http://vault-1:8200"
    assert "HTTP 503" in rows[0]["message"]


def test_format_report_lists_events_in_order():
    body = format_report([ErrorEvent(0.0, "a"), ErrorEvent(60.0, "b", level="INFO")], footer="sent from test")
    assert body.startswith(REPORT_HEADER)
    assert _messages(body) == ["error: a", "info: b"]
    assert body.rstrip().endswith("sent from test")


def test_each_event_restarts_the_quiet_period():
    sink = RecordingSink()
    st = make_settings(notify_queue_delay=0.5, notify_max_elapsed=600.0)
    agg = NotificationAggregator(sink, lambda: st)
    agg.start()
    try:
        for i in range(5):
            agg.notify(f"event {i}")
            last = time.monotonic()
            time.sleep(0.3)
            assert sink.batches == []
        assert wait_for(lambda: len(sink.batches) == 1)
        assert time.monotonic() - last >= 0.4
        assert _messages(sink.batches[0][0]) == [f"error: event {i}" for i in range(5)]
    finally:
        agg.stop(timeout=5)
    assert len(sink.batches) == 1


def test_subject_counts_only_errors():
    sink = RecordingSink()
    clock = Clock()
    agg = _agg(sink, clock, environment="prod")

    agg.on_event(ErrorEvent(clock.now, "http://a:8200 now unsealed", level="INFO"))
    agg.flush()
    agg.on_event(ErrorEvent(clock.now, "checking seal status: HTTP 500"))
    agg.on_event(ErrorEvent(clock.now, "http://b:8200 now unsealed", level="INFO"))
    agg.flush()

    assert [subject for _, subject in sink.batches] == [
        "vault-unsealer: prod: 1 nodes unsealed",
        "vault-unsealer: prod: 1 errors occurred",
    ]
