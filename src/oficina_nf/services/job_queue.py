from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from oficina_nf.models.base import utcnow
from oficina_nf.models.job import DONE, PENDING, PROCESSING, DeadLetterJob, EmissionJob
from oficina_nf.services.exceptions import JobNotFound, LeaseLost

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimedJob:
    """Snapshot of a job handed to one worker; safe to use after the claim commits."""

    id: int
    nota_fiscal_id: int
    payload: dict[str, Any]
    attempts: int
    claim_token: str | None = None


class JobQueue:
    """Durable emission queue over the nf_jobs / nf_jobs_dlq tables.

    Every operation runs in the caller's session so it joins the caller's
    transaction; the queue never commits on its own.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    def enqueue(self, session: Session, invoice_id: int, payload: dict[str, Any]) -> EmissionJob:
        now = self._clock()
        job = EmissionJob(
            nota_fiscal_id=invoice_id,
            payload=payload,
            status=PENDING,
            attempts=0,
            next_run_at=None,
            criado_em=now,
            atualizado_em=now,
        )
        session.add(job)
        session.flush()
        logger.debug("Enqueued job %d for invoice %d", job.id, invoice_id)
        return job

    def claim_next(self, session: Session) -> ClaimedJob | None:
        """Mark the oldest due pending job as processing and return it.

        The row lock with SKIP LOCKED keeps concurrent claimers apart on
        PostgreSQL; the conditional update makes the claim exclusive on
        backends without row locks as well. A lost race moves on to the
        next candidate.
        """
        skipped: list[int] = []
        while True:
            now = self._clock()
            stmt = (
                select(EmissionJob.id)
                .where(
                    EmissionJob.status == PENDING,
                    or_(EmissionJob.next_run_at.is_(None), EmissionJob.next_run_at <= now),
                )
                .order_by(EmissionJob.criado_em, EmissionJob.id)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            if skipped:
                stmt = stmt.where(EmissionJob.id.not_in(skipped))
            job_id = session.execute(stmt).scalar_one_or_none()
            if job_id is None:
                return None

            token = secrets.token_hex(16)
            claimed = session.execute(
                update(EmissionJob)
                .where(EmissionJob.id == job_id, EmissionJob.status == PENDING)
                .values(status=PROCESSING, claim_token=token, atualizado_em=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                logger.debug("Job %d claimed elsewhere, trying next", job_id)
                skipped.append(job_id)
                continue

            row = session.execute(
                select(
                    EmissionJob.id,
                    EmissionJob.nota_fiscal_id,
                    EmissionJob.payload,
                    EmissionJob.attempts,
                ).where(EmissionJob.id == job_id)
            ).one()
            return ClaimedJob(
                id=row.id,
                nota_fiscal_id=row.nota_fiscal_id,
                payload=row.payload,
                attempts=row.attempts,
                claim_token=token,
            )

    @staticmethod
    def _owned_by(job: ClaimedJob):
        token_match = (
            EmissionJob.claim_token.is_(None)
            if job.claim_token is None
            else EmissionJob.claim_token == job.claim_token
        )
        return (EmissionJob.id == job.id, EmissionJob.status == PROCESSING, token_match)

    def _update_owned(self, session: Session, job: ClaimedJob, **values: Any) -> None:
        changed = session.execute(
            update(EmissionJob)
            .where(*self._owned_by(job))
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not changed:
            raise LeaseLost(f"Job {job.id} is no longer held by this claim")

    def complete(self, session: Session, job: ClaimedJob) -> None:
        self._update_owned(
            session, job, status=DONE, claim_token=None, atualizado_em=self._clock()
        )

    def reschedule(
        self,
        session: Session,
        job: ClaimedJob,
        attempts: int,
        error: str,
        delay: timedelta,
    ) -> datetime:
        """Return the job to pending, due after *delay*; returns the new next_run_at."""
        now = self._clock()
        next_run_at = now + delay
        self._update_owned(
            session,
            job,
            status=PENDING,
            claim_token=None,
            attempts=attempts,
            last_error=error,
            next_run_at=next_run_at,
            atualizado_em=now,
        )
        return next_run_at

    def move_to_dead_letter(
        self, session: Session, job: ClaimedJob, attempts: int, error: str
    ) -> DeadLetterJob:
        """Copy the job into nf_jobs_dlq and delete it, in the caller's transaction."""
        removed = session.execute(
            delete(EmissionJob)
            .where(*self._owned_by(job))
            .execution_options(synchronize_session=False)
        ).rowcount
        if not removed:
            raise LeaseLost(f"Job {job.id} is no longer held by this claim")
        dead = DeadLetterJob(
            original_job_id=job.id,
            nota_fiscal_id=job.nota_fiscal_id,
            payload=job.payload,
            attempts=attempts,
            last_error=error,
            moved_at=self._clock(),
        )
        session.add(dead)
        session.flush()
        logger.warning("Job %d moved to DLQ after %d attempts: %s", job.id, attempts, error)
        return dead

    def find_stale(self, session: Session, lease: timedelta) -> list[ClaimedJob]:
        """Processing jobs whose lease (atualizado_em) expired; rows are locked."""
        cutoff = self._clock() - lease
        rows = session.execute(
            select(EmissionJob)
            .where(EmissionJob.status == PROCESSING, EmissionJob.atualizado_em < cutoff)
            .order_by(EmissionJob.atualizado_em)
            .with_for_update(skip_locked=True)
        ).scalars()
        return [
            ClaimedJob(
                id=job.id,
                nota_fiscal_id=job.nota_fiscal_id,
                payload=job.payload,
                attempts=job.attempts,
                claim_token=job.claim_token,
            )
            for job in rows
        ]

    def requeue_dead_letter(self, session: Session, dlq_id: int) -> EmissionJob:
        """Give a dead-lettered job a fresh attempt budget."""
        dead = session.get(DeadLetterJob, dlq_id)
        if dead is None:
            raise JobNotFound(f"Dead-letter entry {dlq_id} not found")
        job = self.enqueue(session, dead.nota_fiscal_id, dead.payload)
        session.delete(dead)
        logger.info("Requeued DLQ entry %d as job %d", dlq_id, job.id)
        return job

    def list_jobs(self, session: Session, limit: int = 50) -> list[EmissionJob]:
        return list(
            session.execute(
                select(EmissionJob).order_by(EmissionJob.id.desc()).limit(limit)
            ).scalars()
        )

    def list_dead_letters(self, session: Session, limit: int = 50) -> list[DeadLetterJob]:
        return list(
            session.execute(
                select(DeadLetterJob).order_by(DeadLetterJob.id.desc()).limit(limit)
            ).scalars()
        )
