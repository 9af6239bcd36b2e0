import threading

import pytest

from careerdev.gating import record_usage, run_gated


def test_allowed_action_runs_and_commits(ledger):
    outcome = run_gated(ledger, "u1", "roadmap_generator", lambda: {"roadmap": ["week 1"]})
    assert outcome.allowed
    assert outcome.committed
    assert outcome.result == {"roadmap": ["week 1"]}
    assert ledger.get_or_create("u1").usage["roadmap_generator"] == 1


def test_denied_action_never_runs(ledger):
    calls = []
    run_gated(ledger, "u1", "resumes", lambda: calls.append("first"))
    outcome = run_gated(ledger, "u1", "resumes", lambda: calls.append("second"))
    assert not outcome.allowed
    assert outcome.reservation.denial == "quota"
    assert outcome.result is None
    assert calls == ["first"]


def test_failed_action_commits_nothing(ledger):
    def explode():
        raise RuntimeError("model offline")

    with pytest.raises(RuntimeError):
        run_gated(ledger, "u1", "mock_interviews", explode)
    assert ledger.active_user_locks == 0
    assert ledger.get_or_create("u1").usage["mock_interviews"] == 0
    assert run_gated(ledger, "u1", "mock_interviews", lambda: "ok").committed


def test_capability_gate_blocks_extended_quiz(ledger):
    outcome = run_gated(ledger, "u1", "quiz_30_min", lambda: "questions")
    assert not outcome.allowed
    assert outcome.reservation.denial == "capability"
    assert ledger.get_or_create("u1").usage["quiz_generates"] == 0


def test_record_usage_counts_client_side_feature(ledger):
    assert record_usage(ledger, "u1", "salary_guide").committed
    assert not record_usage(ledger, "u1", "salary_guide").allowed


def test_concurrent_requests_share_last_unit(ledger):
    ledger.get_or_create("u1")
    barrier = threading.Barrier(8)
    runs = []
    runs_lock = threading.Lock()

    def action():
        with runs_lock:
            runs.append(1)

    def worker():
        barrier.wait()
        run_gated(ledger, "u1", "cover_letters", action)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(runs) == 1
    assert ledger.get_or_create("u1").usage["cover_letters"] == 1
    assert ledger.active_user_locks == 0


def test_user_locks_are_released_after_use(ledger):
    for index in range(50):
        run_gated(ledger, f"user-{index}", "resumes", lambda: "ok")
    assert ledger.active_user_locks == 0

    with ledger.user_lock("u1"):
        assert ledger.active_user_locks == 1
        with ledger.user_lock("u2"):
            assert ledger.active_user_locks == 2
    assert ledger.active_user_locks == 0
