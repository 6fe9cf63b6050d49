from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from oficina_nf.models.base import Base, JSONPayload, utcnow

PENDING = "pending"
PROCESSING = "processing"
DONE = "done"


class EmissionJob(Base):
    """One durable unit of pending emission work (nf_jobs)."""

    __tablename__ = "nf_jobs"
    __table_args__ = (Index("idx_nf_jobs_status_next_run", "status", "next_run_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    nota_fiscal_id: Mapped[int] = mapped_column(
        ForeignKey("notas_fiscais.id", ondelete="CASCADE")
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload)
    status: Mapped[str] = mapped_column(String(20), default=PENDING)
    attempts: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    # Set on every claim; only the holder of the current token may finish the job.
    claim_token: Mapped[str | None] = mapped_column(String(32))
    next_run_at: Mapped[datetime | None] = mapped_column()
    criado_em: Mapped[datetime] = mapped_column(default=utcnow)
    atualizado_em: Mapped[datetime] = mapped_column(default=utcnow)


class DeadLetterJob(Base):
    """Terminal copy of a job that exhausted its retry budget (nf_jobs_dlq)."""

    __tablename__ = "nf_jobs_dlq"

    id: Mapped[int] = mapped_column(primary_key=True)
    original_job_id: Mapped[int] = mapped_column()
    nota_fiscal_id: Mapped[int | None] = mapped_column()
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload)
    attempts: Mapped[int] = mapped_column()
    last_error: Mapped[str | None] = mapped_column(Text)
    moved_at: Mapped[datetime] = mapped_column(default=utcnow)
