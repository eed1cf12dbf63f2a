from __future__ import annotations

import asyncio
import datetime as dt

from conftest import OWNER, ScriptedAdapter
from labeleval.core.db import SessionLocal
from labeleval.jobs.llm_throttle import LlmThrottle
from labeleval.jobs.runner import InMemoryRunner
from labeleval.models.evaluation import Evaluation
from labeleval.models.evaluation_result import EvaluationResult
from labeleval.repositories.evaluations import EvaluationRepository
from labeleval.services.evaluation_service import EvaluationService


def _run_to_end(service, evaluation_id):
    async def _scenario():
        await service.start(evaluation_id, OWNER)
        await service.wait_for_pass(evaluation_id)

    asyncio.run(_scenario())


def _result_count(evaluation_id) -> int:
    db = SessionLocal()
    try:
        return db.query(EvaluationResult).filter(EvaluationResult.evaluation_id == evaluation_id).count()
    finally:
        db.close()


def test_pass_never_exceeds_effective_concurrency(seed_evaluation, make_service, read_evaluation):
    ids = seed_evaluation([(f"m{index} true", True) for index in range(12)])
    adapter = ScriptedAdapter(delay=0.01)
    service = make_service(adapter)

    _run_to_end(service, ids["evaluation_id"])

    assert service.settings.effective_concurrency == 4
    assert adapter.max_active == 4
    evaluation = read_evaluation(ids["evaluation_id"])
    assert evaluation["status"] == "completed"
    assert evaluation["processedMessages"] == 12
    assert evaluation["correctPredictions"] == 12
    assert evaluation["accuracy"] == 100.0


def test_effective_concurrency_has_floor_of_one(seed_evaluation, make_service):
    ids = seed_evaluation([(f"m{index} false", False) for index in range(4)])
    adapter = ScriptedAdapter(delay=0.005)
    service = make_service(adapter, max_concurrent=1, concurrency_ratio=0.5)

    _run_to_end(service, ids["evaluation_id"])

    assert service.settings.effective_concurrency == 1
    assert adapter.max_active == 1


def test_completion_counters_add_up(seed_evaluation, scripted_adapter, make_service, read_evaluation):
    messages = (
        [(f"c{index} true", True) for index in range(4)]
        + [(f"c{index} false", False) for index in range(4, 7)]
        + [("x1 true", False)]
        + [("e1 boom", True), ("e2 boom", False)]
    )
    ids = seed_evaluation(messages)
    service = make_service(scripted_adapter)

    _run_to_end(service, ids["evaluation_id"])

    evaluation = read_evaluation(ids["evaluation_id"])
    assert evaluation["status"] == "completed"
    assert evaluation["completedAt"] is not None
    assert evaluation["processedMessages"] == evaluation["totalMessages"] == 10
    assert evaluation["correctPredictions"] == 7
    assert evaluation["incorrectPredictions"] == 1
    assert evaluation["errorCount"] == 2
    assert evaluation["accuracy"] == 87.5
    assert (
        evaluation["correctPredictions"] + evaluation["incorrectPredictions"] + evaluation["errorCount"]
        == evaluation["processedMessages"]
    )
    assert evaluation["totalTimeMs"] == 8 * 5
    assert _result_count(ids["evaluation_id"]) == 10


def test_pass_emits_batch_and_per_message_events(seed_evaluation, scripted_adapter, make_service):
    ids = seed_evaluation([("a true", True), ("b false", False)])
    service = make_service(scripted_adapter)

    async def _scenario():
        subscription = service.broadcaster.subscribe(ids["evaluation_id"])
        await service.start(ids["evaluation_id"], OWNER)
        await service.wait_for_pass(ids["evaluation_id"])
        events = []
        while not subscription.queue.empty():
            events.append(subscription.queue.get_nowait())
        return events

    events = asyncio.run(_scenario())

    assert events[-1] is None
    types = [event["type"] for event in events[:-1]]
    assert types[0] == "evaluation"
    assert types[1] == "llm_batch_start"
    assert events[1]["data"] == {"queueSize": 2, "capacity": 4}
    assert types.count("llm_call_start") == 2
    assert types.count("llm_call_complete") == 2
    assert types[-1] == "complete"
    assert events[-2]["data"]["status"] == "completed"


def test_rate_limit_failure_grows_shared_backoff(seed_evaluation, make_settings, read_evaluation):
    ids = seed_evaluation([("limit", True)])
    sleeps: list[float] = []

    async def _fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    throttle = LlmThrottle(error_delay_ms=0, sleep=_fake_sleep)
    service = EvaluationService(
        settings=make_settings(),
        adapter=ScriptedAdapter(),
        throttle=throttle,
        job_runner=InMemoryRunner(),
    )

    _run_to_end(service, ids["evaluation_id"])

    assert throttle.backoff_ms == 1000
    evaluation = read_evaluation(ids["evaluation_id"])
    assert evaluation["status"] == "completed"
    assert evaluation["errorCount"] == 1
    assert evaluation["accuracy"] == 0


def test_timeout_fails_the_run_and_keeps_it_resumable(seed_evaluation, scripted_adapter, make_service, read_evaluation):
    ids = seed_evaluation([(f"m{index} true", True) for index in range(6)])
    service = make_service(scripted_adapter, max_concurrent=1, concurrency_ratio=1.0)

    async def _expire(call_number, prompt_text):
        if call_number == 2:
            db = SessionLocal()
            try:
                db.get(Evaluation, ids["evaluation_id"]).timeout_at = dt.datetime.utcnow() - dt.timedelta(seconds=1)
                db.commit()
            finally:
                db.close()

    scripted_adapter.on_call = _expire

    _run_to_end(service, ids["evaluation_id"])

    evaluation = read_evaluation(ids["evaluation_id"])
    assert evaluation["status"] == "failed"
    assert evaluation["canResume"] is True
    assert evaluation["failureReason"] == "Evaluation exceeded timeout limit"
    assert _result_count(ids["evaluation_id"]) == 2
    assert evaluation["processedMessages"] == 2


def test_store_failure_aborts_pass_and_marks_failed(
    seed_evaluation, scripted_adapter, make_service, read_evaluation, monkeypatch
):
    ids = seed_evaluation([("a true", True), ("b true", True)])
    service = make_service(scripted_adapter)

    def _broken_insert(self, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(EvaluationRepository, "insert_result", _broken_insert)

    _run_to_end(service, ids["evaluation_id"])

    evaluation = read_evaluation(ids["evaluation_id"])
    assert evaluation["status"] == "failed"
    assert evaluation["canResume"] is True
    assert evaluation["failureReason"] == "disk full"


def test_empty_dataset_completes_immediately(seed_evaluation, scripted_adapter, make_service, read_evaluation):
    ids = seed_evaluation([])
    service = make_service(scripted_adapter)

    _run_to_end(service, ids["evaluation_id"])

    evaluation = read_evaluation(ids["evaluation_id"])
    assert evaluation["status"] == "completed"
    assert evaluation["processedMessages"] == 0
    assert evaluation["accuracy"] == 0
    assert scripted_adapter.calls == []
