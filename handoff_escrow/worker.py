# handoff_escrow/worker.py
import logging

from redis.exceptions import RedisError
from rq import Retry
from rq.job import JobStatus

from .config import CAPTURE_RETRY_INTERVALS
from .errors import ConflictError, InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

PENDING_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.SCHEDULED, JobStatus.STARTED, JobStatus.DEFERRED)


def retry_capture_job(transaction_id: str):
    """
    This function runs inside an RQ worker (``rq worker captures --with-scheduler``).
    Re-drives the payment capture for a transaction both parties confirmed but
    whose release failed. A CaptureError propagates so RQ schedules the next try.
    """
    from .services import build_services

    # rescheduling belongs to this job's Retry, not to a fresh enqueue
    services = build_services(with_sweeper=False, with_retry_queue=False)
    services.gateway.open()
    try:
        tx = services.engine.retry_capture(transaction_id)
        return {"status": tx.status.value}
    except NotFoundError:
        return {"error": "not found"}
    except (InvalidStateError, ConflictError) as e:
        # completed, closed, or another attempt owns the capture
        return {"status": "skipped", "reason": e.message}
    finally:
        services.gateway.close()


def enqueue_capture_retry(queue, transaction_id: str):
    job_id = f"capture-retry-{transaction_id}"
    try:
        existing = queue.fetch_job(job_id)
        if existing is not None and existing.get_status() in PENDING_JOB_STATUSES:
            logger.info(f"Capture retry {job_id} already pending for transaction {transaction_id}")
            return existing
        job = queue.enqueue(
            retry_capture_job,
            transaction_id,
            retry=Retry(max=len(CAPTURE_RETRY_INTERVALS), interval=CAPTURE_RETRY_INTERVALS),
            job_id=job_id,
        )
    except RedisError as e:
        logger.error(f"Could not enqueue capture retry for transaction {transaction_id}: {e}")
        return None
    logger.info(f"Enqueued capture retry {job.id} for transaction {transaction_id}")
    return job
