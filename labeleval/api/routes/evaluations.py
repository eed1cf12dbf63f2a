from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from labeleval.core.enums import TERMINAL_STATUSES, EventType
from labeleval.core.errors import EvaluationError
from labeleval.lib.runtime_utils import build_results_dataframe, dataframe_to_excel_bytes
from labeleval.services.evaluation_service import EvaluationService, get_evaluation_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["evaluations"])

_TERMINAL_STATUS_VALUES = {status.value for status in TERMINAL_STATUSES}


class EvaluationCreateRequest(BaseModel):
    name: str = ""
    description: Optional[str] = None
    promptId: str = ""
    datasetId: str = ""


class EvaluationRenameRequest(BaseModel):
    name: str = ""


def get_actor_id(x_actor_id: str = Header(default="")) -> str:
    actor_id = str(x_actor_id or "").strip()
    if not actor_id:
        raise HTTPException(status_code=401, detail="X-Actor-Id header is required")
    return actor_id


def _to_http_error(exc: EvaluationError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(jsonable_encoder(event), ensure_ascii=False)}\n\n"


@router.post("/evaluations")
async def create_evaluation(
    body: EvaluationCreateRequest,
    actor_id: str = Depends(get_actor_id),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return await service.create_evaluation(
            name=body.name,
            description=body.description,
            prompt_id=body.promptId,
            dataset_id=body.datasetId,
            actor_id=actor_id,
        )
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.get("/evaluations/{evaluation_id}")
def get_evaluation(evaluation_id: str, service: EvaluationService = Depends(get_evaluation_service)):
    try:
        return service.get_evaluation(evaluation_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.patch("/evaluations/{evaluation_id}/name")
async def rename_evaluation(
    evaluation_id: str,
    body: EvaluationRenameRequest,
    actor_id: str = Depends(get_actor_id),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return await service.rename(evaluation_id, body.name, actor_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.delete("/evaluations/{evaluation_id}")
async def delete_evaluation(
    evaluation_id: str,
    actor_id: str = Depends(get_actor_id),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return await service.delete_evaluation(evaluation_id, actor_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.get("/evaluations/{evaluation_id}/status")
async def validate_evaluation_status(
    evaluation_id: str,
    actor_id: str = Depends(get_actor_id),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return await service.validate_status(evaluation_id, actor_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.post("/evaluations/{evaluation_id}/start")
async def start_evaluation(
    evaluation_id: str,
    actor_id: str = Depends(get_actor_id),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return await service.start(evaluation_id, actor_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.post("/evaluations/{evaluation_id}/stop")
async def stop_evaluation(
    evaluation_id: str,
    actor_id: str = Depends(get_actor_id),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return await service.stop(evaluation_id, actor_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.post("/evaluations/{evaluation_id}/reset")
async def reset_evaluation(
    evaluation_id: str,
    actor_id: str = Depends(get_actor_id),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return await service.reset(evaluation_id, actor_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.post("/evaluations/{evaluation_id}/resume")
async def resume_evaluation(
    evaluation_id: str,
    actor_id: str = Depends(get_actor_id),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return await service.resume(evaluation_id, actor_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.post("/evaluations/{evaluation_id}/retry-errors")
async def retry_evaluation_errors(
    evaluation_id: str,
    actor_id: str = Depends(get_actor_id),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return await service.retry_errors(evaluation_id, actor_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.post("/evaluations/{evaluation_id}/rerun")
async def rerun_evaluation(
    evaluation_id: str,
    actor_id: str = Depends(get_actor_id),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return await service.rerun(evaluation_id, actor_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.get("/evaluations/{evaluation_id}/results")
def list_evaluation_results(
    evaluation_id: str,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=1000),
    service: EvaluationService = Depends(get_evaluation_service),
):
    try:
        return service.list_results(evaluation_id, offset=offset, limit=limit)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.get("/evaluations/{evaluation_id}/stats")
def get_evaluation_stats(evaluation_id: str, service: EvaluationService = Depends(get_evaluation_service)):
    try:
        return service.get_stats(evaluation_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc


@router.get("/evaluations/{evaluation_id}/results/export.xlsx")
def export_evaluation_results(evaluation_id: str, service: EvaluationService = Depends(get_evaluation_service)):
    try:
        page = service.list_results(evaluation_id, offset=0, limit=100000)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc
    if not page["items"]:
        raise HTTPException(status_code=404, detail="No results")

    df = build_results_dataframe(evaluation_id, page["items"])
    xlsx = dataframe_to_excel_bytes(df, sheet_name="evaluation_results")
    file_name = f"evaluation_{evaluation_id}_{dt.datetime.now().strftime('%Y%m%d_%H%M')}.xlsx"
    return StreamingResponse(
        iter([xlsx]),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.get("/evaluations/{evaluation_id}/stream")
async def stream_evaluation_events(evaluation_id: str, service: EvaluationService = Depends(get_evaluation_service)):
    try:
        service.get_evaluation(evaluation_id)
    except EvaluationError as exc:
        raise _to_http_error(exc) from exc

    # Subscribe before reading the snapshot so no event slips in between.
    subscription = service.broadcaster.subscribe(evaluation_id)

    async def _events():
        try:
            snapshot = service.get_evaluation(evaluation_id)
            yield _sse({"type": EventType.EVALUATION.value, "data": snapshot})
            if snapshot["status"] in _TERMINAL_STATUS_VALUES:
                yield _sse({"type": EventType.COMPLETE.value, "data": snapshot})
                return
            while True:
                event = await subscription.next_event()
                if event is None:
                    return
                yield _sse(event)
                if event["type"] == EventType.COMPLETE.value:
                    return
        except EvaluationError as exc:
            logger.exception("Event stream failed for evaluation %s", evaluation_id)
            yield _sse({"type": EventType.ERROR.value, "data": {"message": exc.message}})
        finally:
            subscription.unsubscribe()

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
