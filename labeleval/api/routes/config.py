from __future__ import annotations

from fastapi import APIRouter, Depends

from labeleval.services.evaluation_service import EvaluationService, get_evaluation_service

router = APIRouter(tags=["config"])


@router.get("/config")
def get_engine_config(service: EvaluationService = Depends(get_evaluation_service)):
    payload = service.settings.public_payload()
    payload["llmConfigured"] = bool(service.settings.llm_api_key)
    return payload
