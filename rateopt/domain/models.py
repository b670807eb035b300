from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# SQLite only autoincrements INTEGER primary keys, so tests get the narrower type.
BigId = BigInteger().with_variant(Integer, "sqlite")
# Money and usage are stored at fixed scale; the engine keeps full precision in memory.
Money = Numeric(18, 4)
Quantity = Numeric(18, 6)


class Base(DeclarativeBase):
    pass


class BillingPeriod(Base):
    __tablename__ = "billing_periods"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Period boundaries are wall-clock times in the billing time zone.
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    time_zone: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OptimizationSession(Base):
    __tablename__ = "optimization_sessions"
    __table_args__ = (
        Index("ix_optimization_sessions_tenant_active", "tenant_id", "is_active", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    # External correlation key shared with the progress monitor.
    guid: Mapped[str] = mapped_column(String, unique=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    billing_period_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("billing_periods.id", ondelete="CASCADE"), index=True
    )
    status: Mapped[str] = mapped_column(String, default="running")
    # Cleared once results are consumed so the gate stops treating the session as current.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OptimizationInstance(Base):
    __tablename__ = "optimization_instances"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("optimization_sessions.id", ondelete="CASCADE"), index=True
    )
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    portal_type: Mapped[str] = mapped_column(String)
    billing_period_id: Mapped[int] = mapped_column(BigId, ForeignKey("billing_periods.id"))
    # Snapshot the billing window so queues never re-read a mutable billing period.
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    time_zone: Mapped[str] = mapped_column(String)
    uses_proration: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    charge_type: Mapped[str] = mapped_column(String)
    # Accept optimized results even when they do not beat the current plans.
    skip_lower_cost_check: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    device_count_expected: Mapped[int] = mapped_column(Integer, default=0)
    device_count_actual: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String, default="created", index=True)
    # Completion monitor state machine, persisted so redelivered monitor jobs resume it.
    monitor_state: Mapped[str] = mapped_column(String, default="waiting_for_queues")
    monitor_attempts: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set exactly once when the single error notification has been sent.
    error_reported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rate_plan_update_go: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DeviceGroup(Base):
    __tablename__ = "device_groups"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("optimization_instances.id", ondelete="CASCADE"), index=True
    )
    # communication_plan or optimization_group; drives how devices were partitioned.
    kind: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="planned")
    device_count: Mapped[int] = mapped_column(Integer, default=0)
    baseline_cost: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    # Total sequences the generator will emit; the monitor waits until all are persisted.
    # Factorial counts pass int32 at 13 plans.
    sequence_count_expected: Mapped[int] = mapped_column(BigInteger, default=0)
    sequences_persisted: Mapped[int] = mapped_column(BigInteger, default=0)
    winning_queue_id: Mapped[int | None] = mapped_column(BigId, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RatePlan(Base):
    __tablename__ = "rate_plans"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    code: Mapped[str] = mapped_column(String)
    type_id: Mapped[int] = mapped_column(Integer, default=0)
    # Null scope keys make a plan a candidate for every group of that kind.
    communication_plan: Mapped[str | None] = mapped_column(String, nullable=True)
    optimization_group: Mapped[str | None] = mapped_column(String, nullable=True)
    monthly_rate: Mapped[Decimal] = mapped_column(Quantity)
    included_data_mb: Mapped[Decimal] = mapped_column(Quantity)
    overage_rate_per_unit: Mapped[Decimal] = mapped_column(Quantity)
    data_per_overage_charge: Mapped[Decimal] = mapped_column(Quantity)
    allows_pooling: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class GroupRatePlan(Base):
    __tablename__ = "group_rate_plans"

    # Join table for the candidate plan set a group owns.
    group_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("device_groups.id", ondelete="CASCADE"), primary_key=True
    )
    rate_plan_id: Mapped[int] = mapped_column(BigId, ForeignKey("rate_plans.id"), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, default=0)


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    billing_period_id: Mapped[int | None] = mapped_column(BigId, nullable=True, index=True)
    identifier: Mapped[str] = mapped_column(String)
    usage_mb: Mapped[Decimal] = mapped_column(Quantity)
    current_rate_plan_id: Mapped[int | None] = mapped_column(BigId, ForeignKey("rate_plans.id"), nullable=True)
    baseline_cost: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    communication_plan: Mapped[str | None] = mapped_column(String, nullable=True)
    optimization_group: Mapped[str | None] = mapped_column(String, nullable=True)
    rate_plan_type_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class GroupDevice(Base):
    __tablename__ = "group_devices"

    # Devices are borrowed by groups, never owned, so only the link row cascades.
    group_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("device_groups.id", ondelete="CASCADE"), primary_key=True
    )
    device_id: Mapped[int] = mapped_column(BigId, ForeignKey("devices.id"), primary_key=True)


class RatePlanSequence(Base):
    __tablename__ = "rate_plan_sequences"
    __table_args__ = (
        UniqueConstraint("group_id", "sequence_order", name="uq_rate_plan_sequences_order"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("device_groups.id", ondelete="CASCADE"), index=True
    )
    sequence_order: Mapped[int] = mapped_column(BigInteger)
    rate_plan_ids: Mapped[list[int]] = mapped_column(JSON)


class OptimizationQueue(Base):
    __tablename__ = "optimization_queues"
    __table_args__ = (
        Index("ix_optimization_queues_instance_status", "instance_id", "status"),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("optimization_instances.id", ondelete="CASCADE")
    )
    group_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("device_groups.id", ondelete="CASCADE"), index=True
    )
    sequence_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("rate_plan_sequences.id", ondelete="CASCADE"), unique=True
    )
    status: Mapped[str] = mapped_column(String, default="pending")
    # Bumped on every conditional transition; redelivered messages carry the version they expect.
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_cost: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    strategy_used: Mapped[str | None] = mapped_column(String, nullable=True)
    no_improvement: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    invocations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Refreshed by every claim; a processing queue with an old claim lost its worker.
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class QueueAssignment(Base):
    __tablename__ = "queue_assignments"

    id: Mapped[int] = mapped_column(BigId, primary_key=True, autoincrement=True)
    queue_id: Mapped[int] = mapped_column(
        BigId, ForeignKey("optimization_queues.id", ondelete="CASCADE"), index=True
    )
    device_id: Mapped[int] = mapped_column(BigId)
    # Null when a device kept its current state without any rate plan.
    rate_plan_id: Mapped[int | None] = mapped_column(BigId, nullable=True)
    computed_cost: Mapped[Decimal] = mapped_column(Money)


class AssignerCheckpoint(Base):
    __tablename__ = "assigner_checkpoints"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    queue_id: Mapped[int] = mapped_column(BigId, index=True)
    payload: Mapped[bytes] = mapped_column(LargeBinary)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
