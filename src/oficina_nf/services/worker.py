from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.orm import Session, sessionmaker

from oficina_nf.config import WorkerSettings
from oficina_nf.models.base import utcnow
from oficina_nf.models.gateway import GatewayConfig
from oficina_nf.models.invoice import Invoice, InvoiceHistory
from oficina_nf.services.exceptions import (
    CipherError,
    GatewayConfigNotFound,
    LeaseLost,
    UnknownProvider,
)
from oficina_nf.services.gateway import EmissionResult, GatewayAdapter
from oficina_nf.services.job_queue import ClaimedJob, JobQueue
from oficina_nf.services.retry import emission_backoff

logger = logging.getLogger(__name__)

LEASE_EXPIRED = "processing lease expired"

# Retrying cannot fix these; the job goes straight to the DLQ.
TERMINAL_ERRORS = (UnknownProvider, GatewayConfigNotFound, CipherError)


class Worker:
    """Polls the emission queue and applies the retry / dead-letter policy.

    A claim commits before the provider is called, so no row lock is held
    during the network round trip. The outcome of each job is written in
    one transaction.
    """

    def __init__(
        self,
        sessions: sessionmaker[Session],
        queue: JobQueue,
        gateways: Callable[[GatewayConfig | None], GatewayAdapter],
        settings: WorkerSettings,
        *,
        sleep_func: Callable[[float], object] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.queue = queue
        self.gateways = gateways
        self.settings = settings
        self._sleep = sleep_func
        self._clock = clock

    def run_forever(self, max_iterations: int | None = None) -> int:
        """Poll until interrupted (or *max_iterations*); returns jobs processed."""
        processed = 0
        iterations = 0
        logger.info(
            "Worker started (poll %.1fs, max attempts %d)",
            self.settings.poll_interval,
            self.settings.max_attempts,
        )
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            try:
                did_work = self.run_once()
            except Exception:
                logger.exception("Worker iteration failed")
                did_work = False
            if did_work:
                processed += 1
            else:
                self._sleep(self.settings.poll_interval)
        return processed

    def run_once(self) -> bool:
        """Sweep stale leases, then claim and process one due job."""
        self.sweep()
        with self.sessions.begin() as session:
            job = self.queue.claim_next(session)
        if job is None:
            return False
        self.process(job)
        return True

    def sweep(self) -> int:
        """Treat processing jobs with an expired lease as a failed attempt."""
        lease = timedelta(seconds=self.settings.processing_timeout)
        with self.sessions.begin() as session:
            stale = self.queue.find_stale(session, lease)
            for job in stale:
                logger.warning("Job %d lease expired, recovering", job.id)
                self._record_failure(session, job, LEASE_EXPIRED, delay=timedelta(0))
        return len(stale)

    def process(self, job: ClaimedJob) -> None:
        try:
            result = self._emit(job)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.warning("Emission failed for job %d: %s", job.id, error)
            self._fail(job, error, terminal=isinstance(exc, TERMINAL_ERRORS))
            return

        try:
            with self.sessions.begin() as session:
                self._record_success(session, job, result)
        except LeaseLost:
            logger.warning("Job %d lease lost, emission result discarded", job.id)
        except Exception as exc:
            logger.exception("Could not record emission result for job %d", job.id)
            self._fail(job, f"could not record emission result: {exc}")

    def _emit(self, job: ClaimedJob) -> EmissionResult:
        config_id = job.payload.get("gateway_config_id")
        config = None
        if config_id is not None:
            with self.sessions() as session:
                config = session.get(GatewayConfig, config_id)
            if config is None:
                raise GatewayConfigNotFound(f"Gateway config {config_id} not found")
        gateway = self.gateways(config)
        logger.info("Emitting invoice %d via %s (job %d)", job.nota_fiscal_id, gateway.name, job.id)
        return gateway.emit(job.payload, config)

    def _fail(self, job: ClaimedJob, error: str, terminal: bool = False) -> None:
        try:
            with self.sessions.begin() as session:
                self._record_failure(session, job, error, terminal=terminal)
        except LeaseLost:
            logger.warning("Job %d lease lost, failure not recorded: %s", job.id, error)
        except Exception:
            # Job stays in processing; the lease sweep picks it up later.
            logger.exception("Could not record failure for job %d", job.id)

    def _history(self, session: Session, invoice_id: int, status: str, message: str) -> None:
        if session.get(Invoice, invoice_id) is None:
            logger.warning("Invoice %d no longer exists, history not written", invoice_id)
            return
        session.add(
            InvoiceHistory(
                nota_fiscal_id=invoice_id,
                status=status,
                mensagem=message,
                criado_em=self._clock(),
            )
        )

    def _record_success(self, session: Session, job: ClaimedJob, result: EmissionResult) -> None:
        self.queue.complete(session, job)
        invoice = session.get(Invoice, job.nota_fiscal_id)
        if invoice is not None:
            invoice.numero_externo = result.numero
            if result.pdf is not None:
                invoice.pdf_path = result.pdf.location
            if result.xml is not None:
                invoice.xml_path = result.xml.location
        self._history(
            session,
            job.nota_fiscal_id,
            result.status,
            json.dumps(result.raw_response, default=str, ensure_ascii=False),
        )
        logger.info("Job %d done, provider number %s", job.id, result.numero)

    def _record_failure(
        self,
        session: Session,
        job: ClaimedJob,
        error: str,
        delay: timedelta | None = None,
        terminal: bool = False,
    ) -> None:
        attempts = job.attempts + 1
        if terminal or attempts >= self.settings.max_attempts:
            self.queue.move_to_dead_letter(session, job, attempts, error)
            self._history(
                session,
                job.nota_fiscal_id,
                "failed",
                f"Falha definitiva após {attempts} tentativas: {error}",
            )
            return

        if delay is None:
            delay = emission_backoff(attempts, self.settings.backoff_unit)
        next_run_at = self.queue.reschedule(session, job, attempts, error, delay)
        self._history(
            session,
            job.nota_fiscal_id,
            "retry_scheduled",
            f"Tentativa {attempts} falhou: {error}. "
            f"Nova tentativa em {next_run_at:%Y-%m-%d %H:%M:%S}",
        )
        logger.info("Job %d rescheduled (attempt %d) for %s", job.id, attempts, next_run_at)
