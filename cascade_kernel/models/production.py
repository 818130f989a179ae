"""
Production documents: tasks, reservations, consumption and work sessions.

Contract:
    ProductionTaskModel cost fields (totals, unit costs, estimated cost
    details, factory cost fields) are written only by the task cost and
    factory cost stages. Requirement fields (``materials``,
    ``actual_material_usage``, ``material_in_costs``) belong to production
    workflows.

Invariants:
    - Reservations: ``converted_quantity <= reserved_quantity``.
    - ConsumptionRecordModel is append-only (db/immutability.py).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from cascade_kernel.db.base import TrackedBase, UUIDString
from cascade_kernel.domain.types import ReservationStatus


class ProductionTaskModel(TrackedBase):
    """Manufacturing order.

    ``materials`` entries: ``{material_id, name, quantity}``, the planned
    requirement. ``actual_material_usage`` maps material id to an
    overriding required quantity. ``material_in_costs`` maps material id
    to False for components excluded from the material-cost total.
    """

    __tablename__ = "production_tasks"

    __table_args__ = (Index("ix_production_tasks_order", "order_id"),)

    mo_number: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    order_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("customer_orders.id"), nullable=True,
    )
    quantity: Mapped[Decimal] = mapped_column(default=Decimal("1"), nullable=False)
    completed_quantity: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    processing_cost_per_unit: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )
    materials: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    actual_material_usage: Mapped[dict[str, Any]] = mapped_column(
        JSON, default=dict, nullable=False,
    )
    material_in_costs: Mapped[dict[str, Any]] = mapped_column(
        JSON, default=dict, nullable=False,
    )
    disable_automatic_cost_updates: Mapped[bool] = mapped_column(default=False, nullable=False)

    total_material_cost: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    unit_material_cost: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    total_full_production_cost: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )
    unit_full_production_cost: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )
    estimated_cost_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    costs_calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    factory_cost_total: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    factory_cost_per_unit: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    factory_cost_minutes: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    factory_cost_period_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    total_cost_with_factory: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )
    unit_cost_with_factory: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )


class BatchReservationModel(TrackedBase):
    """Quantity of a batch claimed by a task."""

    __tablename__ = "batch_reservations"

    __table_args__ = (
        Index("ix_batch_reservations_task", "task_id"),
        Index("ix_batch_reservations_batch", "batch_id"),
    )

    task_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("production_tasks.id"), nullable=False,
    )
    material_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    batch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    reserved_quantity: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    converted_quantity: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    unit_price: Mapped[Decimal | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=ReservationStatus.PENDING.value, nullable=False,
    )


class PoReservationModel(TrackedBase):
    """Quantity of an undelivered purchase-order line claimed by a task."""

    __tablename__ = "po_reservations"

    __table_args__ = (Index("ix_po_reservations_task", "task_id"),)

    task_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("production_tasks.id"), nullable=False,
    )
    material_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    purchase_order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    po_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reserved_quantity: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    converted_quantity: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ReservationStatus.PENDING.value, nullable=False,
    )


class ConsumptionRecordModel(TrackedBase):
    """Append-only fact: quantity of a material consumed by a task."""

    __tablename__ = "consumption_records"

    __table_args__ = (
        Index("ix_consumption_records_task", "task_id"),
        Index("ix_consumption_records_batch", "batch_id"),
    )

    task_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("production_tasks.id"), nullable=False,
    )
    material_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    batch_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal | None] = mapped_column(nullable=True)
    include_in_costs: Mapped[bool | None] = mapped_column(nullable=True)
    consumed_at: Mapped[datetime | None] = mapped_column(nullable=True)


class WorkSessionModel(TrackedBase):
    """Wall-clock interval during which a task was being produced."""

    __tablename__ = "work_sessions"

    __table_args__ = (
        Index("ix_work_sessions_task", "task_id"),
        Index("ix_work_sessions_start", "start_time"),
    )

    task_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    start_time: Mapped[datetime | None] = mapped_column(nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(nullable=True)

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "task_id": str(self.task_id),
            "start_time": self.start_time,
            "end_time": self.end_time,
        }
