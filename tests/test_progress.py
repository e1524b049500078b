from catalog_crawler.crawler.progress import EventEmitter, ProgressAggregator


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_updates_are_throttled_and_final_is_forced():
    clock = _Clock()
    emitter = EventEmitter()
    received = []
    emitter.on("progress", received.append)
    aggregator = ProgressAggregator(emitter, min_interval=1.0, clock=clock)
    aggregator.start("list", 10)

    assert aggregator.update({"success": 1}) is not None
    clock.now += 0.2
    assert aggregator.update({"success": 2}) is None
    clock.now += 0.2
    assert aggregator.update({"success": 3}) is None
    clock.now += 1.0
    assert aggregator.update({"success": 4, "failed": 1}) is not None
    final = aggregator.finish({"success": 9, "failed": 1})

    assert [item["sequence"] for item in received] == [1, 2, 3]
    assert received[1]["completed"] == 5
    assert final.final
    assert final.percentage == 100.0
    assert received[-1]["stage"] == "list"


def test_forced_update_bypasses_interval():
    clock = _Clock()
    aggregator = ProgressAggregator(min_interval=60.0, clock=clock)
    aggregator.start("detail", 4)
    aggregator.update({"success": 1})

    snapshot = aggregator.update({"success": 1, "incomplete": 1}, retry_cycle=1, force=True)

    assert snapshot is not None
    assert snapshot.retry_cycle == 1
    assert snapshot.percentage == 50.0


def test_failing_listener_does_not_break_emit():
    emitter = EventEmitter()
    seen = []

    def broken(payload):
        raise RuntimeError("listener bug")

    emitter.on("progress", broken)
    emitter.on("progress", seen.append)
    emitter.emit("progress", {"sequence": 1})

    assert seen == [{"sequence": 1}]


def test_off_removes_listener():
    emitter = EventEmitter()
    seen = []
    emitter.on("gap-report", seen.append)
    emitter.off("gap-report", seen.append)
    emitter.emit("gap-report", {})

    assert seen == []
