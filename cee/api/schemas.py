"""Request and response bodies of the experiments API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from cee.experiments.schemas import ContentCandidate, ExperimentConfig


class OperationResponse(BaseModel):
    """Envelope returned by every operator action."""

    success: bool
    errors: list[str] = Field(default_factory=list)
    data: Any = None


class ExperimentList(BaseModel):
    """Page of experiments."""

    items: list[dict[str, Any]]
    total: int


class BulkCreateRequest(BaseModel):
    """Content list to turn into an experiment (first item is the control)."""

    candidates: list[ContentCandidate]
    config: ExperimentConfig


class SimpleCreateRequest(BaseModel):
    """Control versus a single variant."""

    control_content_ref: str
    variant_content_ref: str
    config: ExperimentConfig


class VariantCreate(BaseModel):
    """Variant to add to a draft experiment."""

    content_ref: str
    name: str | None = None
    traffic_split: float | None = None
    title: str | None = None


class StartRequest(BaseModel):
    start_date: datetime | None = None


class ReasonRequest(BaseModel):
    """Optional operator note for pause, resume and stop."""

    reason: str | None = None


class CloneRequest(BaseModel):
    name: str | None = None


class ResultBatch(BaseModel):
    """Batch of result entries.

    Entries are validated one by one so a malformed entry does not reject
    the rest of the batch.
    """

    entries: list[dict[str, Any]]

