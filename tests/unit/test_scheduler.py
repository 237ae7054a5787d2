import json
import threading

import pytest

import batching.scheduler as scheduler_mod
from batching.errors import DispatchInProgress, InvalidConfiguration
from batching.history import JsonHistoryLog
from batching.runner import EventLogger, RunnerConfig
from batching.scheduler import (
    DISPATCH_FAILED,
    DISPATCHED,
    PENDING,
    DispatchScheduler,
    batch_id_for,
)
from batching.worklist import WorkList
from batching.session import ViewerSessionFactory
from tests.fixtures.fake_viewers import (
    FakeViewerFactory,
    fake_session_factory,
    make_urls,
    make_work_list,
)


@pytest.fixture
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(scheduler_mod.time, "sleep", lambda s: calls.append(s))
    return calls


def _scheduler(n, slice_size=10, script=None, fail_opens=None, **kwargs):
    factory, viewers = fake_session_factory(script=script, fail_opens=fail_opens)
    sched = DispatchScheduler(make_work_list(n), slice_size, factory, **kwargs)
    return sched, viewers


@pytest.mark.unit
def test_rounds_advance_cursor_until_exhausted(sleeps):
    sched, viewers = _scheduler(25)

    first = sched.dispatch_next(2)
    assert first.opened == [0, 1]
    assert first.cursor == 20
    assert not first.exhausted
    assert viewers.open_calls == ["popup_batch_0", "popup_batch_1"]

    second = sched.dispatch_next(2)
    assert second.opened == [2]
    assert second.cursor == 25
    assert second.exhausted

    before = sched.progress()
    third = sched.dispatch_next(2)
    assert third.opened == []
    assert third.cursor == 25
    assert third.exhausted
    assert viewers.open_calls == ["popup_batch_0", "popup_batch_1", "popup_batch_2"]
    assert sched.dispatched_slice_numbers == {0, 1, 2}
    # An exhausted call changes nothing, the round counter included.
    assert sched.rounds == 2
    assert sched.progress() == before
    assert third.round_number == 2


@pytest.mark.unit
def test_each_session_loads_first_item_of_its_slice(sleeps):
    sched, viewers = _scheduler(25)
    urls = make_urls(25)
    summary = sched.dispatch_next(3)

    assert [v.loads for v in viewers.viewers] == [[urls[0]], [urls[10]], [urls[20]]]
    assert [r.ok for r in summary.load_results.values()] == [True, True, True]
    assert sched.in_flight[1].items == tuple(urls[10:20])
    # item_delay between opened sessions, none before the first
    assert sleeps == [0.3, 0.3]


@pytest.mark.unit
def test_concurrency_larger_than_remaining(sleeps):
    sched, _viewers = _scheduler(5)
    summary = sched.dispatch_next(4)
    assert summary.opened == [0]
    assert summary.exhausted
    assert sched.total_slices == 1


@pytest.mark.unit
def test_empty_work_list_is_exhausted_immediately(sleeps):
    sched, viewers = _scheduler(0)
    summary = sched.dispatch_next(2)
    assert summary.exhausted
    assert summary.opened == []
    assert viewers.open_calls == []
    assert sched.total_slices == 1
    assert "nothing left to open" in summary.status_line()


@pytest.mark.unit
def test_open_failure_leaves_slice_eligible(sleeps):
    sched, viewers = _scheduler(25, fail_opens={"popup_batch_1": 1})

    first = sched.dispatch_next(2)
    assert first.opened == [0]
    assert list(first.failed) == [1]
    assert "window creation failed" in first.failed[1]
    assert sched.dispatch_cursor == 10
    assert sched.slice_state(1) == DISPATCH_FAILED
    assert sched.slice_state(2) == PENDING

    second = sched.dispatch_next(2)
    assert second.opened == [1, 2]
    assert second.exhausted
    assert sched.slice_state(1) == DISPATCHED
    assert viewers.open_calls.count("popup_batch_1") == 2


@pytest.mark.unit
def test_failure_before_success_skips_dispatched_gap(sleeps):
    sched, _viewers = _scheduler(30, fail_opens={"popup_batch_0": 1})

    first = sched.dispatch_next(2)
    assert first.opened == [1]
    assert sched.dispatch_cursor == 0

    second = sched.dispatch_next(2)
    assert second.opened == [0, 2]
    assert second.skipped == [1]
    assert second.inconsistencies == []
    assert sched.dispatch_cursor == 30
    assert sched.exhausted


@pytest.mark.unit
def test_no_slice_is_dispatched_twice(sleeps):
    sched, viewers = _scheduler(47, slice_size=5)
    while not sched.dispatch_next(3).exhausted:
        pass
    assert len(viewers.open_calls) == 10
    assert len(set(viewers.open_calls)) == 10
    assert sched.dispatch_cursor == 47


@pytest.mark.unit
def test_failure_always_leaves_cursor_in_place(sleeps):
    sched, _viewers = _scheduler(10, fail_opens={"popup_batch_0": -1})
    for _ in range(3):
        summary = sched.dispatch_next(1)
        assert summary.opened == []
        assert summary.cursor == 0
    assert not sched.exhausted


@pytest.mark.unit
def test_load_failure_does_not_undo_dispatch(sleeps):
    urls = make_urls(20)
    sched, _viewers = _scheduler(20, script={urls[0]: [-200]})

    summary = sched.dispatch_next(2)

    assert summary.opened == [0, 1]
    assert not summary.load_results[0].ok
    assert summary.load_results[1].ok
    assert sched.dispatch_cursor == 20


@pytest.mark.unit
def test_inconsistent_cursor_is_warned_and_skipped(sleeps, capsys):
    sched, viewers = _scheduler(30)
    sched.dispatched_slice_numbers.add(0)

    summary = sched.dispatch_next(2)

    assert summary.inconsistencies == [0]
    assert summary.opened == [1, 2]
    assert viewers.open_calls == ["popup_batch_1", "popup_batch_2"]
    assert sched.dispatch_cursor == 30
    assert "WARNING: slice 0 is already dispatched" in capsys.readouterr().err


@pytest.mark.unit
@pytest.mark.parametrize("bad", [0, -2, 1.5])
def test_invalid_concurrency_rejected(sleeps, bad):
    sched, viewers = _scheduler(10)
    with pytest.raises(InvalidConfiguration):
        sched.dispatch_next(bad)
    assert viewers.open_calls == []
    assert sched.rounds == 0


@pytest.mark.unit
def test_invalid_constructor_arguments():
    factory, _viewers = fake_session_factory()
    with pytest.raises(InvalidConfiguration):
        DispatchScheduler(make_work_list(5), 0, factory)
    with pytest.raises(InvalidConfiguration):
        DispatchScheduler(make_work_list(5), 5, factory, max_parallel_opens=0)


@pytest.mark.unit
def test_overlapping_round_is_rejected(sleeps):
    sched, viewers = _scheduler(20)
    sched._lock.acquire()
    try:
        with pytest.raises(DispatchInProgress):
            sched.dispatch_next(1)
    finally:
        sched._lock.release()
    assert viewers.open_calls == []
    assert sched.dispatch_next(1).opened == [0]


@pytest.mark.unit
def test_round_started_from_a_load_callback_is_rejected(sleeps):
    sched, _viewers = _scheduler(20)
    errors = []

    original = sched._register

    def register(slice_number, handle):
        original(slice_number, handle)

        def on_event(h, event):
            if event.kind == "load_finished":
                try:
                    sched.dispatch_next(1)
                except DispatchInProgress as exc:
                    errors.append(exc)

        handle.subscribe(on_event)

    sched._register = register
    summary = sched.dispatch_next(1)

    assert summary.opened == [0]
    assert len(errors) == 1
    assert sched.dispatch_cursor == 10


@pytest.mark.unit
def test_user_closed_session_stays_dispatched(sleeps):
    sched, viewers = _scheduler(20)
    sched.dispatch_next(1)
    viewers.viewers[0].user_close()

    assert 0 not in sched.in_flight
    assert 0 in sched.dispatched_slice_numbers

    summary = sched.dispatch_next(1)
    assert summary.opened == [1]
    assert viewers.open_calls == ["popup_batch_0", "popup_batch_1"]


@pytest.mark.unit
def test_reopen_replaces_live_session(sleeps):
    sched, viewers = _scheduler(20)
    sched.dispatch_next(2)
    old = sched.in_flight[0]

    new = sched.reopen(0)

    assert old.closed
    assert sched.in_flight[0] is new
    assert new.batch_id == batch_id_for(0)
    assert viewers.viewers_for("popup_batch_0")[-1].loads == [make_urls(20)[0]]
    assert sched.dispatched_slice_numbers == {0, 1}
    assert sched.dispatch_cursor == 20

    # Closing the replaced window must not evict the new one.
    assert 0 in sched.in_flight


@pytest.mark.unit
def test_reopen_requires_dispatched_slice(sleeps):
    sched, _viewers = _scheduler(20)
    with pytest.raises(KeyError):
        sched.reopen(1)


@pytest.mark.unit
def test_parallel_opens_keep_slice_order(sleeps):
    sched, viewers = _scheduler(40, max_parallel_opens=4)
    summary = sched.dispatch_next(4)
    assert summary.opened == [0, 1, 2, 3]
    assert sorted(viewers.open_calls) == [batch_id_for(n) for n in range(4)]
    assert sched.dispatch_cursor == 40


@pytest.mark.unit
def test_close_all_closes_live_sessions(sleeps):
    sched, viewers = _scheduler(30)
    sched.dispatch_next(3)
    sched.close_all()
    assert sched.in_flight == {}
    assert all(v.is_closed() for v in viewers.viewers)
    assert sched.dispatched_slice_numbers == {0, 1, 2}


@pytest.mark.unit
def test_history_records_successful_initial_loads(sleeps, tmp_path):
    urls = make_urls(20)
    history = JsonHistoryLog(tmp_path / "history.json")
    sched, _viewers = _scheduler(20, script={urls[10]: [-7]}, history=history)

    sched.dispatch_next(2)

    entries = history.read_all()
    assert [(e["url"], e["batch_id"]) for e in entries] == [(urls[0], "popup_batch_0")]


@pytest.mark.unit
def test_round_events_are_logged(sleeps, tmp_path):
    path = tmp_path / "run.ndjson"
    logger = EventLogger(RunnerConfig(run_id="r1", verbose=False, ndjson_path=path))
    sched, _viewers = _scheduler(15, logger=logger, fail_opens={"popup_batch_1": 1})
    try:
        sched.dispatch_next(2)
    finally:
        logger.close()

    events = [json.loads(line) for line in path.read_text().splitlines()]
    kinds = [e["event"] for e in events]
    assert kinds[0] == "round_start"
    assert kinds[-1] == "round_done"
    dispatched = [e for e in events if e["event"] == "slice_dispatched"]
    assert [e["batch_id"] for e in dispatched] == ["popup_batch_0"]
    warnings = [e for e in events if e["event"] == "warning"]
    assert warnings[0]["slice_number"] == 1
    assert events[-1]["failed"] == {"1": "window creation failed for popup_batch_1"}


@pytest.mark.unit
def test_progress_snapshot(sleeps):
    sched, _viewers = _scheduler(25)
    sched.dispatch_next(2)
    progress = sched.progress()
    assert progress["cursor"] == 20
    assert progress["dispatched"] == [0, 1]
    assert progress["live"] == [0, 1]
    assert progress["total_slices"] == 3
    assert progress["exhausted"] is False


@pytest.mark.unit
def test_status_line_mentions_failures():
    summary = scheduler_mod.RoundSummary(
        round_number=2, cursor=10, total_items=25, exhausted=False, opened=[0], failed={1: "boom"}
    )
    line = summary.status_line()
    assert line.startswith("Round 2: opened 1 batch(es), 1 failed; 10/25 URLs dispatched")
    assert "batch 2: boom" in line


@pytest.mark.unit
def test_work_list_is_not_mutated(sleeps):
    wl = WorkList(tuple(make_urls(12)))
    factory, _viewers = fake_session_factory()
    sched = DispatchScheduler(wl, 5, factory)
    sched.dispatch_next(3)
    assert wl.items == tuple(make_urls(12))


@pytest.mark.unit
def test_reopen_checks_dispatch_state_under_the_lock(sleeps):
    sched, viewers = _scheduler(20)
    sched._lock.acquire()
    try:
        with pytest.raises(DispatchInProgress):
            sched.reopen(1)
    finally:
        sched._lock.release()
    assert viewers.open_calls == []


@pytest.mark.unit
def test_parallel_open_failure_holds_cursor_behind_it(sleeps):
    sched, viewers = _scheduler(40, fail_opens={"popup_batch_1": 1}, max_parallel_opens=4)

    first = sched.dispatch_next(4)

    assert first.opened == [0, 2, 3]
    assert list(first.failed) == [1]
    assert sched.dispatch_cursor == 10
    assert sched.dispatched_slice_numbers == {0, 2, 3}

    second = sched.dispatch_next(4)

    assert second.opened == [1]
    assert second.skipped == [2, 3]
    assert sched.dispatch_cursor == 40
    assert sched.exhausted


class _SliceTwoFirstFactory(FakeViewerFactory):
    """Holds the open of slice 1 until slice 2 has been confirmed."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.slice_two_opened = threading.Event()

    def open_viewer(self, batch_id, emit):
        if batch_id == "popup_batch_1" and not self.slice_two_opened.wait(timeout=5):
            raise RuntimeError("slice 2 never opened")
        try:
            return super().open_viewer(batch_id, emit)
        finally:
            if batch_id == "popup_batch_2":
                self.slice_two_opened.set()


@pytest.mark.unit
def test_parallel_opens_confirmed_out_of_order(sleeps):
    viewers = _SliceTwoFirstFactory()
    sched = DispatchScheduler(
        make_work_list(40), 10, ViewerSessionFactory(viewers), max_parallel_opens=4
    )

    summary = sched.dispatch_next(4)

    assert viewers.open_calls.index("popup_batch_2") < viewers.open_calls.index("popup_batch_1")
    assert summary.opened == [0, 1, 2, 3]
    assert sched.dispatch_cursor == 40


@pytest.mark.unit
def test_late_parallel_open_that_fails_holds_cursor(sleeps):
    viewers = _SliceTwoFirstFactory(fail_opens={"popup_batch_1": 1})
    sched = DispatchScheduler(
        make_work_list(40), 10, ViewerSessionFactory(viewers), max_parallel_opens=4
    )

    first = sched.dispatch_next(4)

    assert first.opened == [0, 2, 3]
    assert sched.dispatch_cursor == 10
    assert sched.dispatch_next(4).opened == [1]
    assert sched.dispatch_cursor == 40


@pytest.mark.unit
def test_window_steps_through_its_slice(sleeps, tmp_path):
    urls = make_urls(25)
    history = JsonHistoryLog(tmp_path / "history.json")
    sched, viewers = _scheduler(25, history=history)
    sched.dispatch_next(3)

    assert sched.position_label(2) == "URL 1 of 5"
    assert sched.previous_item(2) is None
    for _ in range(4):
        assert sched.next_item(2).ok
    assert sched.current_item(2) == urls[24]
    assert sched.position_label(2) == "URL 5 of 5"
    assert sched.next_item(2) is None

    result = sched.previous_item(2)
    assert result.ok
    assert sched.current_item(2) == urls[23]
    assert viewers.viewers_for("popup_batch_2")[0].loads == [
        urls[20], urls[21], urls[22], urls[23], urls[24], urls[23],
    ]
    batch_two = [e["url"] for e in history.read_all() if e["batch_id"] == "popup_batch_2"]
    assert batch_two == [urls[20], urls[21], urls[22], urls[23], urls[24], urls[23]]
    # Other windows keep their own cursor.
    assert sched.position_label(0) == "URL 1 of 10"


@pytest.mark.unit
def test_window_failed_load_keeps_cursor(sleeps, tmp_path):
    urls = make_urls(10)
    history = JsonHistoryLog(tmp_path / "history.json")
    sched, _viewers = _scheduler(10, script={urls[1]: [-200]}, history=history)
    sched.dispatch_next(1)

    result = sched.next_item(0)

    assert not result.ok
    assert sched.current_item(0) == urls[1]
    assert [e["url"] for e in history.read_all()] == [urls[0]]
    assert sched.next_item(0).ok
    assert sched.current_item(0) == urls[2]


@pytest.mark.unit
def test_navigate_moves_cursor_only_inside_slice(sleeps, tmp_path):
    urls = make_urls(20)
    history = JsonHistoryLog(tmp_path / "history.json")
    sched, viewers = _scheduler(20, history=history)
    sched.dispatch_next(2)

    assert sched.navigate(1, urls[17]).ok
    assert sched.position_label(1) == "URL 8 of 10"

    assert sched.navigate(1, "https://elsewhere.example.com/help").ok
    assert sched.position_label(1) == "URL 8 of 10"
    assert viewers.viewers_for("popup_batch_1")[0].loads[-1] == "https://elsewhere.example.com/help"
    assert history.read_all()[-1] == {
        "url": "https://elsewhere.example.com/help",
        "timestamp": history.read_all()[-1]["timestamp"],
        "batch_id": "popup_batch_1",
    }

    with pytest.raises(ValueError):
        sched.navigate(1, "not a url")


@pytest.mark.unit
def test_window_commands_need_a_live_dispatched_window(sleeps):
    sched, viewers = _scheduler(30)
    sched.dispatch_next(1)

    with pytest.raises(KeyError):
        sched.next_item(2)
    assert sched.position_label(2) == "Not dispatched"
    assert sched.current_item(2) is None

    viewers.viewers[0].user_close()
    with pytest.raises(KeyError):
        sched.next_item(0)

    sched.reopen(0)
    assert sched.position_label(0) == "URL 1 of 10"
    assert sched.next_item(0).ok


@pytest.mark.unit
def test_reopen_restarts_window_cursor(sleeps):
    sched, _viewers = _scheduler(10)
    sched.dispatch_next(1)
    sched.next_item(0)
    sched.next_item(0)

    sched.reopen(0)

    assert sched.position_label(0) == "URL 1 of 10"
    assert sched.progress()["pages"] == {0: 0}
