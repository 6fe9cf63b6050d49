from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from oficina_nf.models.job import DONE, PENDING, PROCESSING, DeadLetterJob, EmissionJob
from oficina_nf.services.exceptions import JobNotFound, LeaseLost
from oficina_nf.services.invoice_computer import InvoiceComputer
from oficina_nf.services.job_queue import ClaimedJob, JobQueue


@pytest.fixture
def invoice_ids(sessions, queue, clock, make_order):
    """Three generated invoices; each enqueued one job."""
    computer = InvoiceComputer(sessions, queue, clock=clock)
    return [computer.generate(make_order(services=[("1", "80.00", None)])).id for _ in range(3)]


def _claim(sessions, queue) -> ClaimedJob | None:
    with sessions.begin() as session:
        return queue.claim_next(session)


class TestEnqueueAndClaim:
    def test_claims_oldest_first(self, sessions, queue, invoice_ids):
        claimed = [_claim(sessions, queue) for _ in range(3)]
        assert [c.nota_fiscal_id for c in claimed] == invoice_ids
        assert _claim(sessions, queue) is None

    def test_claim_marks_processing(self, sessions, queue, invoice_ids, clock):
        job = _claim(sessions, queue)
        with sessions() as session:
            row = session.get(EmissionJob, job.id)
            assert row.status == PROCESSING
            assert row.atualizado_em == clock.now
        assert job.attempts == 0
        assert job.payload["id"] == invoice_ids[0]

    def test_future_job_not_claimable(self, sessions, queue, invoice_ids, clock):
        job = _claim(sessions, queue)
        with sessions.begin() as session:
            queue.reschedule(session, job, 1, "boom", timedelta(minutes=1))
        # Remaining two are due; the rescheduled one is not.
        assert _claim(sessions, queue).id != job.id
        assert _claim(sessions, queue).id != job.id
        assert _claim(sessions, queue) is None
        clock.advance(minutes=1)
        again = _claim(sessions, queue)
        assert again.id == job.id
        assert again.attempts == 1

    def test_complete(self, sessions, queue, invoice_ids):
        job = _claim(sessions, queue)
        with sessions.begin() as session:
            queue.complete(session, job)
        with sessions() as session:
            assert session.get(EmissionJob, job.id).status == DONE

    def test_complete_missing_job(self, sessions, queue):
        ghost = ClaimedJob(id=404, nota_fiscal_id=1, payload={}, attempts=0, claim_token="x")
        with sessions.begin() as session, pytest.raises(JobNotFound):
            queue.complete(session, ghost)

    def test_claim_sets_fresh_token(self, sessions, queue, invoice_ids):
        first = _claim(sessions, queue)
        second = _claim(sessions, queue)
        assert first.claim_token
        assert first.claim_token != second.claim_token
        with sessions() as session:
            assert session.get(EmissionJob, first.id).claim_token == first.claim_token

    def test_concurrent_claims_are_exclusive(self, sessions, clock, make_order):
        queue = JobQueue(clock=clock)
        computer = InvoiceComputer(sessions, queue, clock=clock)
        total = 12
        for _ in range(total):
            computer.generate(make_order(services=[("1", "10.00", None)]))

        claimed: list[int] = []
        lock = threading.Lock()

        def drain():
            while True:
                job = _claim(sessions, queue)
                if job is None:
                    return
                with lock:
                    claimed.append(job.id)

        threads = [threading.Thread(target=drain) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(claimed) == total
        assert len(set(claimed)) == total


class TestDeadLetter:
    def test_move_is_atomic(self, sessions, queue, invoice_ids):
        job = _claim(sessions, queue)
        with sessions.begin() as session:
            dead = queue.move_to_dead_letter(session, job, 5, "provider down")
        with sessions() as session:
            assert session.get(EmissionJob, job.id) is None
            row = session.get(DeadLetterJob, dead.id)
            assert row.original_job_id == job.id
            assert row.attempts == 5
            assert row.last_error == "provider down"
            assert row.payload == job.payload

    def test_vanished_job_rolls_back_insert(self, sessions, queue, invoice_ids):
        job = _claim(sessions, queue)
        with sessions.begin() as session:
            session.delete(session.get(EmissionJob, job.id))
        with pytest.raises(JobNotFound), sessions.begin() as session:
            queue.move_to_dead_letter(session, job, 5, "x")
        with sessions() as session:
            assert session.execute(select(func.count(DeadLetterJob.id))).scalar_one() == 0

    def test_requeue_dead_letter(self, sessions, queue, invoice_ids):
        job = _claim(sessions, queue)
        with sessions.begin() as session:
            dead = queue.move_to_dead_letter(session, job, 5, "x")
        with sessions.begin() as session:
            new_job = queue.requeue_dead_letter(session, dead.id)
        with sessions() as session:
            assert session.get(DeadLetterJob, dead.id) is None
            row = session.get(EmissionJob, new_job.id)
            assert row.status == PENDING
            assert row.attempts == 0
            assert row.nota_fiscal_id == job.nota_fiscal_id

    def test_requeue_unknown(self, sessions, queue):
        with sessions.begin() as session, pytest.raises(JobNotFound):
            queue.requeue_dead_letter(session, 1)


class TestInspection:
    def test_find_stale(self, sessions, queue, invoice_ids, clock):
        job = _claim(sessions, queue)
        with sessions() as session:
            assert queue.find_stale(session, timedelta(minutes=10)) == []
        clock.advance(minutes=11)
        with sessions() as session:
            stale = queue.find_stale(session, timedelta(minutes=10))
        assert [s.id for s in stale] == [job.id]

    def test_list_jobs_newest_first(self, sessions, queue, invoice_ids):
        with sessions() as session:
            jobs = queue.list_jobs(session, limit=2)
        assert len(jobs) == 2
        assert jobs[0].id > jobs[1].id

    def test_list_dead_letters(self, sessions, queue, invoice_ids):
        job = _claim(sessions, queue)
        with sessions.begin() as session:
            queue.move_to_dead_letter(session, job, 3, "x")
        with sessions() as session:
            assert [d.original_job_id for d in queue.list_dead_letters(session)] == [job.id]


class TestClaimOwnership:
    @pytest.fixture
    def reclaimed(self, sessions, queue, invoice_ids, clock):
        """First claim goes stale and is swept back; a second claim takes the job."""
        first = _claim(sessions, queue)
        clock.advance(minutes=11)
        with sessions.begin() as session:
            (stale,) = queue.find_stale(session, timedelta(minutes=10))
            queue.reschedule(session, stale, 1, "processing lease expired", timedelta(0))
        second = _claim(sessions, queue)
        assert second.id == first.id
        return first, second

    def test_old_claim_cannot_complete(self, sessions, queue, reclaimed):
        first, second = reclaimed
        with pytest.raises(LeaseLost), sessions.begin() as session:
            queue.complete(session, first)
        with sessions() as session:
            row = session.get(EmissionJob, second.id)
            assert row.status == PROCESSING
            assert row.claim_token == second.claim_token

    def test_old_claim_cannot_reschedule(self, sessions, queue, reclaimed):
        first, second = reclaimed
        with pytest.raises(LeaseLost), sessions.begin() as session:
            queue.reschedule(session, first, 2, "late", timedelta(0))
        with sessions() as session:
            assert session.get(EmissionJob, second.id).status == PROCESSING

    def test_old_claim_cannot_dead_letter(self, sessions, queue, reclaimed):
        first, second = reclaimed
        with pytest.raises(LeaseLost), sessions.begin() as session:
            queue.move_to_dead_letter(session, first, 3, "late")
        with sessions() as session:
            assert session.get(EmissionJob, second.id).status == PROCESSING
            assert session.execute(select(func.count(DeadLetterJob.id))).scalar_one() == 0

    def test_current_claim_still_completes(self, sessions, queue, reclaimed):
        _, second = reclaimed
        with sessions.begin() as session:
            queue.complete(session, second)
        with sessions() as session:
            assert session.get(EmissionJob, second.id).status == DONE
