"""Saga step log reads and idempotent writes."""

from uuid import uuid4

from sqlalchemy import select

from mentorsaga.common.db import insert_ignore
from mentorsaga.services.reconciliation.models import SagaStep, SagaStepName


def record_step(db, payment_id: str, step: SagaStepName, detail: dict | None = None) -> bool:
    """Insert one step row; False when that step was already recorded."""

    inserted = insert_ignore(
        db,
        SagaStep,
        {"id": str(uuid4()), "payment_id": payment_id, "step": step.value, "detail": detail or {}},
    )
    return inserted is not None


def load_steps(db, payment_id: str) -> dict[str, SagaStep]:
    rows = db.execute(select(SagaStep).where(SagaStep.payment_id == payment_id)).scalars().all()
    return {row.step: row for row in rows}
