# handoff_escrow/sweeper.py
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from .config import SWEEP_INTERVAL_SECONDS
from .models import OPEN_STATUSES, Handoff, Transaction

logger = logging.getLogger(__name__)


def find_stale_handoffs(engine, now=None):
    now = now or engine.clock()
    with engine.session_factory() as session:
        return session.execute(
            select(Handoff.id)
            .join(Transaction, Transaction.id == Handoff.transaction_id)
            .where(
                Handoff.expires_at < now,
                Handoff.confirmed_at.is_(None),
                Transaction.status.in_(OPEN_STATUSES),
                # both parties confirmed: waiting on a capture retry, not on expiry
                ~(Handoff.buyer_confirmed.is_(True) & Handoff.seller_confirmed.is_(True)),
            )
            .order_by(Handoff.expires_at)
        ).scalars().all()


def sweep_expired_handoffs(engine):
    """Expire every stale handoff. Returns how many transactions moved to EXPIRED."""
    expired = 0
    handoff_ids = find_stale_handoffs(engine)
    for handoff_id in handoff_ids:
        try:
            if engine.expire(handoff_id) is not None:
                expired += 1
        except Exception:
            logger.exception(f"Error expiring handoff {handoff_id}")
    if expired > 0:
        logger.info(f"Expired {expired} handoff(s)")
    return expired


class ExpirySweeper:
    def __init__(self, engine, interval_seconds=SWEEP_INTERVAL_SECONDS):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.last_count = None

    def run_once(self):
        try:
            self.last_count = sweep_expired_handoffs(self.engine)
        except Exception:
            logger.exception("Error running expiration check")
        return self.last_count

    def start(self):
        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="expire_handoffs",
            name="Expire stale handoffs",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Expiry sweeper started, every {self.interval_seconds}s")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Expiry sweeper stopped")
