"""SQLAlchemy ORM models for content experiments.

Three entities make up the durable contract: ``Experiment`` (the content A/B
test), its ``Variant`` arms, and the append-only ``MetricSample`` ledger that
every aggregate is derived from.
"""

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


class ExperimentsBase(DeclarativeBase):
    """Base class for experiment ORM models."""

    pass


class Experiment(ExperimentsBase):
    """Content A/B test.

    Owns one control artifact and one or more Variants. ``status`` moves
    draft -> active <-> paused -> stopped | completed.
    """

    __tablename__ = "experiments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    campaign_ref: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Baseline content being tested against
    control_content_ref: Mapped[str] = mapped_column(String(255), nullable=False)

    # Configuration
    primary_goal: Mapped[str] = mapped_column(String(100), nullable=False)
    secondary_goals_json: Mapped[list[str] | None] = mapped_column(
        JSON, nullable=True
    )
    confidence_level: Mapped[int] = mapped_column(Integer, nullable=False, default=95)
    minimum_sample_size: Mapped[int] = mapped_column(
        Integer, nullable=False, default=100
    )
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False, default=14)
    traffic_allocation: Mapped[float] = mapped_column(
        Float, nullable=False, default=100.0
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="draft", index=True
    )
    start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Results
    winner_variant_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    statistical_significance: Mapped[bool] = mapped_column(Boolean, default=False)

    # Operational notes (pause/stop reasons, completed_at, final report)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now
    )

    variants: Mapped[list["Variant"]] = relationship(
        "Variant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="Variant.id",
    )

    __table_args__ = (
        Index("idx_experiment_status_created", "status", "created_at"),
        Index("idx_experiment_campaign_goal", "campaign_ref", "primary_goal"),
    )

    def __repr__(self) -> str:
        return (
            f"Experiment(id={self.id}, name={self.name!r}, "
            f"status={self.status!r}, goal={self.primary_goal!r})"
        )

    @property
    def secondary_goals(self) -> list[str]:
        """Get secondary goals as list."""
        return self.secondary_goals_json or []

    @property
    def experiment_metadata(self) -> dict[str, Any]:
        """Get metadata as dict."""
        return self.metadata_json or {}

    def merge_metadata(self, **values: Any) -> None:
        """Merge values into the metadata map.

        JSON columns are not mutation-tracked, so a new dict is assigned.
        """
        self.metadata_json = {**self.experiment_metadata, **values}


class Variant(ExperimentsBase):
    """One arm of an experiment.

    ``status`` is only ever written by the parent experiment's cascade.
    ``sample_size`` is maintained with atomic increments when samples are
    recorded and always equals the sum over its MetricSample rows.
    """

    __tablename__ = "experiment_variants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    experiment_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("experiments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    content_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    traffic_split: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_control: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    experiment: Mapped["Experiment"] = relationship(
        "Experiment", back_populates="variants"
    )
    samples: Mapped[list["MetricSample"]] = relationship(
        "MetricSample",
        back_populates="variant",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("experiment_id", "name", name="uq_variant_experiment_name"),
        Index("idx_variant_experiment_control", "experiment_id", "is_control"),
    )

    def __repr__(self) -> str:
        return (
            f"Variant(id={self.id}, experiment_id={self.experiment_id}, "
            f"name={self.name!r}, split={self.traffic_split}, "
            f"status={self.status!r})"
        )

    @property
    def variant_metadata(self) -> dict[str, Any]:
        """Get metadata as dict."""
        return self.metadata_json or {}

    def merge_metadata(self, **values: Any) -> None:
        """Merge values into the metadata map."""
        self.metadata_json = {**self.variant_metadata, **values}

    @property
    def traffic_allocation_percentage(self) -> str:
        """Traffic split formatted for display, e.g. ``'25.5%'``."""
        return f"{self.traffic_split:g}%"


class MetricSample(ExperimentsBase):
    """One recorded observation of a named metric for a variant on a day.

    Rows are append-only; several rows for the same variant, metric and day
    (late or corrected data) are all kept and aggregated independently.
    """

    __tablename__ = "experiment_metric_samples"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    experiment_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("experiments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    variant_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("experiment_variants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    metric_name: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    recorded_date: Mapped[date] = mapped_column(Date, nullable=False)

    data_source: Mapped[str] = mapped_column(
        String(50), nullable=False, default="manual"
    )
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    experiment: Mapped["Experiment"] = relationship("Experiment")
    variant: Mapped["Variant"] = relationship("Variant", back_populates="samples")

    __table_args__ = (
        Index("idx_sample_variant_metric", "variant_id", "metric_name"),
        Index("idx_sample_variant_date", "variant_id", "recorded_date"),
        Index("idx_sample_experiment_metric", "experiment_id", "metric_name"),
    )

    def __repr__(self) -> str:
        return (
            f"MetricSample(id={self.id}, variant_id={self.variant_id}, "
            f"metric={self.metric_name!r}, value={self.value}, "
            f"n={self.sample_size}, date={self.recorded_date})"
        )

    @property
    def sample_metadata(self) -> dict[str, Any]:
        """Get metadata as dict."""
        return self.metadata_json or {}
