# handoff_escrow/services.py
import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from typing import Optional

import redis
from rq import Queue

from .accounts import PayeeAccounts
from .config import CAPTURE_LEASE_SECONDS, HANDOFF_TTL_HOURS, REDIS_URL, STRIPE_WEBHOOK_SECRET, SWEEP_INTERVAL_SECONDS
from .database import SessionLocal
from .engine import EscrowEngine
from .gateway import PaymentGateway, StripeGateway
from .reconciler import GatewayEventReconciler
from .relay import LocationRelay, LocationStore
from .sweeper import ExpirySweeper
from .worker import enqueue_capture_retry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    gateway: PaymentGateway
    engine: EscrowEngine
    reconciler: GatewayEventReconciler
    relay: LocationRelay
    accounts: PayeeAccounts
    sweeper: Optional[ExpirySweeper] = None

    def start(self):
        self.gateway.open()
        if self.sweeper is not None:
            self.sweeper.start()

    def stop(self):
        if self.sweeper is not None:
            self.sweeper.shutdown()
        self.gateway.close()


def build_services(session_factory=SessionLocal, gateway=None, with_sweeper=True, with_retry_queue=True,
                   connection=None):
    gateway = gateway or StripeGateway()

    on_capture_failed = None
    if with_retry_queue:
        connection = connection or redis.Redis.from_url(REDIS_URL)
        queue = Queue("captures", connection=connection, default_timeout=600)
        on_capture_failed = partial(enqueue_capture_retry, queue)

    engine = EscrowEngine(
        session_factory,
        gateway,
        handoff_ttl=timedelta(hours=HANDOFF_TTL_HOURS),
        on_capture_failed=on_capture_failed,
        capture_lease=timedelta(seconds=CAPTURE_LEASE_SECONDS),
    )
    return Services(
        gateway=gateway,
        engine=engine,
        reconciler=GatewayEventReconciler(session_factory, STRIPE_WEBHOOK_SECRET),
        relay=LocationRelay(engine.parties, store=LocationStore(session_factory)),
        accounts=PayeeAccounts(session_factory, gateway),
        sweeper=ExpirySweeper(engine, SWEEP_INTERVAL_SECONDS) if with_sweeper else None,
    )
