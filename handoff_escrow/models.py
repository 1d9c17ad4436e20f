# handoff_escrow/models.py
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Float, Text, Enum, ForeignKey, Boolean
from sqlalchemy.orm import relationship
from sqlalchemy.types import TIMESTAMP

from .database import Base


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands back naive datetimes for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id():
    return str(uuid.uuid4())


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


OPEN_STATUSES = (TransactionStatus.PENDING, TransactionStatus.AUTHORIZED)


class PayeeStatus(str, enum.Enum):
    PENDING = "pending"
    ENABLED = "enabled"
    RESTRICTED = "restricted"


class User(Base):
    __tablename__ = "users"
    id = Column(String(128), primary_key=True)
    email = Column(String(255), nullable=True)
    payee_account_ref = Column(String(128), nullable=True, unique=True, index=True)
    payee_status = Column(Enum(PayeeStatus), nullable=False, default=PayeeStatus.PENDING)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    @property
    def is_payable(self):
        return bool(self.payee_account_ref) and self.payee_status != PayeeStatus.RESTRICTED


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String(36), primary_key=True, default=new_id)
    buyer_id = Column(String(128), nullable=False, index=True)
    seller_id = Column(String(128), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Enum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)
    gateway_intent_id = Column(String(128), nullable=True, unique=True, index=True)
    gateway_payee_account_ref = Column(String(128), nullable=True)
    client_secret = Column(String(255), nullable=True)
    # set while one caller owns the capture call; cleared if the capture fails
    capture_started_at = Column(TIMESTAMP(timezone=True), nullable=True)
    last_capture_error = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    handoff = relationship("Handoff", back_populates="transaction", uselist=False, lazy="joined")

    @property
    def is_open(self):
        return self.status in OPEN_STATUSES

    def role_of(self, actor_id):
        if actor_id == self.buyer_id:
            return "buyer"
        if actor_id == self.seller_id:
            return "seller"
        return None


class Handoff(Base):
    __tablename__ = "handoffs"
    id = Column(String(36), primary_key=True, default=new_id)
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False, unique=True, index=True)
    meeting_lat = Column(Float, nullable=False)
    meeting_lng = Column(Float, nullable=False)
    confirmation_code = Column(String(16), nullable=False)
    qr_payload = Column(Text, nullable=False)
    buyer_confirmed = Column(Boolean, nullable=False, default=False)
    seller_confirmed = Column(Boolean, nullable=False, default=False)
    confirmed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    transaction = relationship("Transaction", back_populates="handoff", lazy="joined")

    @property
    def both_confirmed(self):
        return bool(self.buyer_confirmed and self.seller_confirmed)

    def confirmed_by(self, role):
        return bool(self.buyer_confirmed if role == "buyer" else self.seller_confirmed)

    def is_expired(self, now):
        return now >= as_utc(self.expires_at)


class LocationPoint(Base):
    __tablename__ = "location_points"
    id = Column(Integer, primary_key=True, index=True)
    handoff_id = Column(String(36), ForeignKey("handoffs.id"), nullable=False, index=True)
    actor_id = Column(String(128), nullable=False)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    recorded_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
