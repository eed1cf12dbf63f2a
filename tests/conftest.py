from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

os.environ.setdefault(
    "LABELEVAL_DB_PATH",
    str(Path(__file__).resolve().parents[1] / "labeleval_test.db"),
)
os.environ.setdefault("LABELEVAL_ALLOW_DB_RESET", "1")

from labeleval.adapters.model_invocation_adapter import ModelResponse
from labeleval.core.db import Base, SessionLocal, _ENGINE, assert_safe_db_reset
from labeleval.core.errors import ModelInvocationError, ModelRateLimitError
from labeleval.core.settings import EngineSettings
from labeleval.jobs.runner import InMemoryRunner
from labeleval.models import dataset, evaluation, evaluation_result, prompt  # noqa: F401
from labeleval.repositories.datasets import DatasetRepository
from labeleval.repositories.evaluations import EvaluationRepository
from labeleval.repositories.prompts import PromptRepository
from labeleval.services.evaluation_service import EvaluationService

OWNER = "owner-1"


@pytest.fixture(autouse=True)
def reset_db():
    assert_safe_db_reset()
    Base.metadata.drop_all(_ENGINE)
    Base.metadata.create_all(_ENGINE)
    yield


class ScriptedAdapter:
    """Stands in for the model endpoint; the message text decides the reply.

    ``... true`` / ``... false`` answer inside ``<r>`` tags, ``boom`` raises an
    invocation error, ``limit`` raises a rate-limit error and ``notag`` answers
    without tags.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.fail_markers = {"boom"}
        self.calls: list[str] = []
        self.params: list[dict] = []
        self.active = 0
        self.max_active = 0
        self.on_call = None

    async def invoke(self, session, model_id, prompt_text, params):
        self.calls.append(prompt_text)
        self.params.append(dict(params))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_call is not None:
                await self.on_call(len(self.calls), prompt_text)
            await asyncio.sleep(self.delay)
            if any(marker in prompt_text for marker in self.fail_markers):
                raise ModelInvocationError("upstream exploded", response_time_ms=3)
            if "limit" in prompt_text:
                raise ModelRateLimitError("Model HTTP 429: Rate limit reached", response_time_ms=3)
            if "notag" in prompt_text:
                return ModelResponse(content="I am not sure about this one", response_time_ms=5)
            answer = "true" if " true" in prompt_text else "false"
            return ModelResponse(content=f"Reasoning... <r>{answer}</r>", response_time_ms=5)
        finally:
            self.active -= 1


@pytest.fixture
def scripted_adapter():
    return ScriptedAdapter()


def _seed(
    messages: list[tuple[str, bool]],
    *,
    owner: str = OWNER,
    name: str = "complaints",
    prompt_text: str = "Classify: {{messageContent}}",
    **prompt_overrides,
) -> dict[str, str]:
    db = SessionLocal()
    try:
        seeded_prompt = PromptRepository(db).create_prompt(
            name="detector",
            model_id="test-model",
            prompt_text=prompt_text,
            opening_tag=prompt_overrides.pop("opening_tag", "<r>"),
            closing_tag=prompt_overrides.pop("closing_tag", "</r>"),
            created_by=owner,
            **prompt_overrides,
        )
        seeded_dataset = DatasetRepository(db).create_dataset(
            name=f"dataset-{name}",
            messages=[{"messageContent": content, "label": label} for content, label in messages],
            created_by=owner,
        )
        seeded_evaluation = EvaluationRepository(db).create_evaluation(
            name=name,
            prompt_id=seeded_prompt.id,
            dataset_id=seeded_dataset.id,
            total_messages=len(messages),
            created_by=owner,
        )
        db.commit()
        return {
            "prompt_id": seeded_prompt.id,
            "dataset_id": seeded_dataset.id,
            "evaluation_id": seeded_evaluation.id,
        }
    finally:
        db.close()


@pytest.fixture
def seed_evaluation():
    return _seed


def _test_settings(**overrides) -> EngineSettings:
    values = {
        "retry_delay_ms": 0,
        "llm_error_delay_ms": 0,
        "progress_flush_every": 3,
    }
    values.update(overrides)
    return EngineSettings(**values)


@pytest.fixture
def make_service():
    def _make(adapter, **settings_overrides) -> EvaluationService:
        return EvaluationService(
            settings=_test_settings(**settings_overrides),
            adapter=adapter,
            job_runner=InMemoryRunner(),
        )

    return _make


@pytest.fixture
def make_settings():
    return _test_settings


def load_evaluation(evaluation_id: str) -> dict:
    db = SessionLocal()
    try:
        repo = EvaluationRepository(db)
        return repo.build_evaluation_payload(repo.get_evaluation(evaluation_id))
    finally:
        db.close()


@pytest.fixture
def read_evaluation():
    return load_evaluation
