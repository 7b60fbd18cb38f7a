"""
SQLAlchemy 2.0 database models for PredictRadar.

Stores tracked entities, raw signal items, aggregated impacts, fetched quotes,
predictions with their live snapshots, and batch pipeline runs.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from predictradar.utils.datetime import utcnow

Base = declarative_base()


PREDICTION_STATE_LIVE = "live"
PREDICTION_STATE_CLOSED = "closed"


class Entity(Base):
    """Tracked instrument with fetch health bookkeeping."""

    __tablename__ = "entities"
    __table_args__ = (
        Index("ix_entities_active_last_fetch", "active", "last_fetch_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    symbol = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    sector = Column(String, nullable=True, index=True)
    active = Column(Boolean, nullable=False, default=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_fetch_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    quotes = relationship("PriceQuote", back_populates="entity")
    predictions = relationship("Prediction", back_populates="entity")

    def __repr__(self) -> str:
        return f"<Entity(id={self.id}, symbol={self.symbol}, active={self.active})>"


class SignalRecord(Base):
    """One source's opinion about one entity, as delivered by an ingestion adapter."""

    __tablename__ = "signal_items"
    __table_args__ = (
        Index("ix_signal_items_entity_timestamp", "entity_id", "timestamp"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_signal_items_confidence"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    source_id = Column(String, nullable=False, index=True)
    channel = Column(String, nullable=False, default="news")  # news, social
    sentiment = Column(String, nullable=False)  # positive, negative, neutral
    confidence = Column(Float, nullable=False)
    source_weight = Column(Float, nullable=False)
    engagement_weight = Column(Float, nullable=True)
    timestamp = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    entity = relationship("Entity")

    def __repr__(self) -> str:
        return f"<SignalRecord(entity_id={self.entity_id}, source={self.source_id}, sentiment={self.sentiment})>"


class AggregatedImpact(Base):
    """Weighted multi-source sentiment score for one entity and window. Insert-only."""

    __tablename__ = "aggregated_impacts"
    __table_args__ = (
        Index("ix_aggregated_impacts_entity_variant", "entity_id", "model_variant", "computed_at"),
        CheckConstraint("score >= -1 AND score <= 1", name="ck_aggregated_impacts_score"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    model_variant = Column(String, nullable=False)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    score = Column(Float, nullable=False)
    item_count = Column(Integer, nullable=False, default=0)
    total_weight = Column(Float, nullable=False, default=0.0)
    computed_at = Column(DateTime, nullable=False, default=utcnow)

    entity = relationship("Entity")

    def __repr__(self) -> str:
        return f"<AggregatedImpact(entity_id={self.entity_id}, variant={self.model_variant}, score={self.score:.3f})>"


class PriceQuote(Base):
    """Point-in-time quote fetched from a quote provider."""

    __tablename__ = "price_quotes"
    __table_args__ = (
        Index("ix_price_quotes_entity_fetched", "entity_id", "fetched_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    price = Column(Float, nullable=False)
    change = Column(Float, nullable=True)
    change_percent = Column(Float, nullable=True)
    high = Column(Float, nullable=True)
    low = Column(Float, nullable=True)
    open = Column(Float, nullable=True)
    previous_close = Column(Float, nullable=True)
    fetched_at = Column(DateTime, nullable=False, default=utcnow)
    source = Column(String, default="yahoo")

    entity = relationship("Entity", back_populates="quotes")

    def __repr__(self) -> str:
        return f"<PriceQuote(entity_id={self.entity_id}, price={self.price}, fetched_at={self.fetched_at})>"


class Prediction(Base):
    """Directional prediction with its baseline and, once closed, its graded outcome."""

    __tablename__ = "predictions"
    __table_args__ = (
        Index("ix_predictions_state_target", "state", "target_at"),
        Index("ix_predictions_entity_variant_state", "entity_id", "model_variant", "state"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_predictions_confidence"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    model_variant = Column(String, nullable=False)  # fundamentals, hype
    formula_version = Column(String, nullable=False)  # v2-gated, v1-legacy
    predicted_direction = Column(String, nullable=False)  # up, down
    confidence = Column(Float, nullable=False)
    signal_score = Column(Float, nullable=True)
    volatility = Column(Float, nullable=True)
    predicted_change = Column(Float, nullable=True)  # Expected % move, if the model states one
    baseline_price = Column(Float, nullable=True)
    baseline_at = Column(DateTime, nullable=False)
    target_at = Column(DateTime, nullable=False)
    state = Column(String, nullable=False, default=PREDICTION_STATE_LIVE)

    # Terminal fields, set exactly once by the evaluator
    actual_direction = Column(String, nullable=True)  # up, down, flat
    actual_change = Column(Float, nullable=True)
    actual_price = Column(Float, nullable=True)
    correct = Column(Boolean, nullable=True)
    evaluated_at = Column(DateTime, nullable=True)

    # Live tracking fields
    current_deviation = Column(Float, nullable=True)
    last_checked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    entity = relationship("Entity", back_populates="predictions")
    snapshots = relationship("PredictionSnapshot", back_populates="prediction", order_by="PredictionSnapshot.sampled_at")

    @property
    def is_live(self) -> bool:
        return self.state == PREDICTION_STATE_LIVE

    def __repr__(self) -> str:
        return (
            f"<Prediction(id={self.id}, entity_id={self.entity_id}, variant={self.model_variant}, "
            f"direction={self.predicted_direction}, state={self.state})>"
        )


class PredictionSnapshot(Base):
    """Live sample of a prediction against the latest price. Append-only."""

    __tablename__ = "prediction_snapshots"
    __table_args__ = (
        Index("ix_prediction_snapshots_prediction_sampled", "prediction_id", "sampled_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    prediction_id = Column(Integer, ForeignKey("predictions.id"), nullable=False)
    sampled_at = Column(DateTime, nullable=False, default=utcnow)
    current_price = Column(Float, nullable=False)
    price_change = Column(Float, nullable=False)
    deviation = Column(Float, nullable=False)
    is_correct = Column(Boolean, nullable=True)  # None while movement is flat

    prediction = relationship("Prediction", back_populates="snapshots")

    def __repr__(self) -> str:
        return f"<PredictionSnapshot(prediction_id={self.prediction_id}, change={self.price_change:.2f}%)>"


class PipelineRun(Base):
    """Execution log for batch jobs (ingest, fetch, track, evaluate, analyze)."""

    __tablename__ = "pipeline_runs"
    __table_args__ = (
        Index("ix_pipeline_runs_job_started", "job_name", "started_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    job_name = Column(String, nullable=False, index=True)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, index=True)  # running, success, failure
    duration_ms = Column(Integer, nullable=True)
    counts_json = Column(JSON, nullable=True)
    errors_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<PipelineRun(job_name={self.job_name}, status={self.status})>"
