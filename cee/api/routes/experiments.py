"""Content experiment routes.

Operator actions answer with an ``OperationResponse`` envelope. Refused
actions return HTTP 422 with ``{"success": false, "errors": [...]}`` and an
unknown experiment returns 404.

Endpoints:
    - GET /experiments
    - POST /experiments
    - POST /experiments/bulk
    - POST /experiments/simple
    - GET /experiments/summary
    - GET /experiments/{id}
    - DELETE /experiments/{id}
    - POST /experiments/{id}/clone
    - POST /experiments/{id}/variants
    - DELETE /experiments/{id}/variants/{variant_id}
    - POST /experiments/{id}/start|pause|resume|stop|complete
    - POST /experiments/{id}/results
    - GET /experiments/{id}/results
    - GET /experiments/{id}/variants/{variant_id}/metrics
    - GET /experiments/{id}/variants/{variant_id}/comparison
    - GET /experiments/{id}/winner
    - GET /experiments/{id}/report
"""

from datetime import date
from typing import Any

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cee.api.dependencies import Actor, Service
from cee.api.schemas import (
    BulkCreateRequest,
    CloneRequest,
    ExperimentList,
    OperationResponse,
    ReasonRequest,
    ResultBatch,
    SimpleCreateRequest,
    StartRequest,
    VariantCreate,
)
from cee.experiments.schemas import ExperimentConfig, OperationResult

router = APIRouter(prefix="/experiments", tags=["experiments"])


# ==================== Helper Functions ====================


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _respond(
    result: OperationResult[Any],
    success_status: int = status.HTTP_200_OK,
) -> JSONResponse:
    """Convert an OperationResult into an HTTP response."""
    if result.success:
        code = success_status
    elif result.not_found:
        code = status.HTTP_404_NOT_FOUND
    else:
        code = status.HTTP_422_UNPROCESSABLE_CONTENT
    body = OperationResponse(
        success=result.success,
        errors=result.errors,
        data=_dump(result.value),
    )
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))


# ==================== Collection ====================


@router.get("", response_model=ExperimentList)
async def list_experiments(
    service: Service,
    status_filter: str | None = Query(None, alias="status"),
    campaign_ref: str | None = Query(None),
    search: str | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> ExperimentList:
    """List experiments, newest first."""
    experiments = await service.list_experiments(
        status=status_filter,
        campaign_ref=campaign_ref,
        search=search,
        limit=limit,
        offset=offset,
    )
    return ExperimentList(
        items=[e.model_dump(mode="json") for e in experiments],
        total=len(experiments),
    )


@router.post("", response_model=OperationResponse, status_code=201)
async def create_experiment(
    config: ExperimentConfig,
    service: Service,
    actor: Actor,
) -> JSONResponse:
    """Create a draft experiment with its control variant."""
    result = await service.create_experiment(config, actor=actor)
    return _respond(result, status.HTTP_201_CREATED)


@router.post("/bulk", response_model=OperationResponse, status_code=201)
async def bulk_create_experiment(
    request: BulkCreateRequest,
    service: Service,
    actor: Actor,
) -> JSONResponse:
    """Create an experiment from a content list with an even traffic split."""
    result = await service.bulk_create_from_content_list(
        request.candidates, request.config, actor=actor
    )
    return _respond(result, status.HTTP_201_CREATED)


@router.post("/simple", response_model=OperationResponse, status_code=201)
async def simple_create_experiment(
    request: SimpleCreateRequest,
    service: Service,
    actor: Actor,
) -> JSONResponse:
    """Create a control-versus-one-variant experiment."""
    result = await service.setup_simple_experiment(
        request.control_content_ref,
        request.variant_content_ref,
        request.config,
        actor=actor,
    )
    return _respond(result, status.HTTP_201_CREATED)


@router.get("/summary")
async def analytics_summary(service: Service) -> dict[str, Any]:
    """Totals across all experiments."""
    return await service.analytics_summary()


# ==================== Single experiment ====================


@router.get("/{experiment_id}")
async def get_experiment(
    experiment_id: int,
    service: Service,
) -> dict[str, Any]:
    """Get an experiment with its variants."""
    snapshot = await service.get_experiment(experiment_id)
    return snapshot.model_dump(mode="json")


@router.delete("/{experiment_id}", response_model=OperationResponse)
async def delete_experiment(
    experiment_id: int,
    service: Service,
    actor: Actor,
) -> JSONResponse:
    """Delete an experiment that is not running."""
    return _respond(await service.delete_experiment(experiment_id, actor=actor))


@router.post(
    "/{experiment_id}/clone", response_model=OperationResponse, status_code=201
)
async def clone_experiment(
    experiment_id: int,
    service: Service,
    actor: Actor,
    request: CloneRequest | None = None,
) -> JSONResponse:
    """Copy an experiment into a new draft."""
    name = request.name if request else None
    result = await service.clone_experiment(experiment_id, actor=actor, name=name)
    return _respond(result, status.HTTP_201_CREATED)


@router.post(
    "/{experiment_id}/variants", response_model=OperationResponse, status_code=201
)
async def add_variant(
    experiment_id: int,
    request: VariantCreate,
    service: Service,
    actor: Actor,
) -> JSONResponse:
    """Add a variant to a draft experiment."""
    result = await service.add_variant(
        experiment_id,
        request.content_ref,
        name=request.name,
        traffic_split=request.traffic_split,
        actor=actor,
        title=request.title,
    )
    return _respond(result, status.HTTP_201_CREATED)


@router.delete(
    "/{experiment_id}/variants/{variant_id}", response_model=OperationResponse
)
async def remove_variant(
    experiment_id: int,
    variant_id: int,
    service: Service,
    actor: Actor,
) -> JSONResponse:
    """Remove a variant from a draft experiment."""
    result = await service.remove_variant(experiment_id, variant_id, actor=actor)
    return _respond(result)


# ==================== Lifecycle ====================


@router.post("/{experiment_id}/start", response_model=OperationResponse)
async def start_experiment(
    experiment_id: int,
    service: Service,
    actor: Actor,
    request: StartRequest | None = None,
) -> JSONResponse:
    """Start a draft experiment."""
    start_date = request.start_date if request else None
    result = await service.start(experiment_id, actor=actor, start_date=start_date)
    return _respond(result)


@router.post("/{experiment_id}/pause", response_model=OperationResponse)
async def pause_experiment(
    experiment_id: int,
    service: Service,
    actor: Actor,
    request: ReasonRequest | None = None,
) -> JSONResponse:
    """Pause an active experiment."""
    reason = request.reason if request else None
    return _respond(await service.pause(experiment_id, reason=reason, actor=actor))


@router.post("/{experiment_id}/resume", response_model=OperationResponse)
async def resume_experiment(
    experiment_id: int,
    service: Service,
    actor: Actor,
    request: ReasonRequest | None = None,
) -> JSONResponse:
    """Resume a paused experiment."""
    reason = request.reason if request else None
    return _respond(await service.resume(experiment_id, reason=reason, actor=actor))


@router.post("/{experiment_id}/stop", response_model=OperationResponse)
async def stop_experiment(
    experiment_id: int,
    service: Service,
    actor: Actor,
    request: ReasonRequest | None = None,
) -> JSONResponse:
    """Stop an active or paused experiment early."""
    reason = request.reason if request else None
    return _respond(await service.stop(experiment_id, reason=reason, actor=actor))


@router.post("/{experiment_id}/complete", response_model=OperationResponse)
async def complete_experiment(
    experiment_id: int,
    service: Service,
    actor: Actor,
) -> JSONResponse:
    """Complete an experiment that reached its minimum sample size."""
    return _respond(await service.complete(experiment_id, actor=actor))


# ==================== Results and reports ====================


@router.post("/{experiment_id}/results", response_model=OperationResponse)
async def record_results(
    experiment_id: int,
    batch: ResultBatch,
    service: Service,
) -> JSONResponse:
    """Record a batch of metric samples."""
    result = await service.record_results(experiment_id, batch.entries)
    response = OperationResult(
        success=result.success,
        value={"recorded": result.value or 0},
        errors=result.errors,
        not_found=result.not_found,
    )
    return _respond(response)


@router.get("/{experiment_id}/results")
async def current_results(
    experiment_id: int,
    service: Service,
) -> dict[str, Any]:
    """Control and variant aggregates with the statistical section."""
    return await service.current_results(experiment_id)


@router.get("/{experiment_id}/variants/{variant_id}/metrics")
async def variant_metrics(
    experiment_id: int,
    variant_id: int,
    service: Service,
) -> dict[str, Any]:
    """Per-metric aggregates of one variant."""
    metrics = await service.performance_metrics(experiment_id, variant_id)
    return {name: stats.model_dump(mode="json") for name, stats in metrics.items()}


@router.get("/{experiment_id}/variants/{variant_id}/comparison")
async def variant_comparison(
    experiment_id: int,
    variant_id: int,
    service: Service,
) -> dict[str, Any]:
    """One variant against the control on every shared metric."""
    comparison = await service.compare_with_control(experiment_id, variant_id)
    return {name: c.model_dump(mode="json") for name, c in comparison.items()}


@router.get("/{experiment_id}/winner")
async def winner(
    experiment_id: int,
    service: Service,
) -> dict[str, Any]:
    """Current winner verdict on the primary goal."""
    verdict = await service.declare_winner(experiment_id)
    return verdict.model_dump(mode="json")


@router.get("/{experiment_id}/report")
async def performance_report(
    experiment_id: int,
    service: Service,
    start_date: date | None = Query(None, description="First recorded date"),
    end_date: date | None = Query(None, description="Last recorded date"),
) -> dict[str, Any]:
    """Full performance report; empty sections for draft experiments."""
    date_range = (start_date, end_date) if start_date or end_date else None
    report = await service.generate_performance_report(
        experiment_id, date_range=date_range
    )
    return report.model_dump(mode="json")
