# handoff_escrow/accounts.py
import logging

from .errors import ConflictError, ValidationError
from .gateway import PayeeAccount
from .models import PayeeStatus, User, utcnow

logger = logging.getLogger(__name__)


class PayeeAccounts:
    """Seller onboarding: links a user to a payout account at the processor."""

    def __init__(self, session_factory, gateway):
        self.session_factory = session_factory
        self.gateway = gateway

    def register(self, user_id, email) -> PayeeAccount:
        if not user_id:
            raise ValidationError("user_id is required")
        if not email or "@" not in email:
            raise ValidationError("a valid email is required")

        with self.session_factory() as session:
            user = session.get(User, user_id)
        if user is not None and user.payee_account_ref:
            raise ConflictError(f"Payee account already exists: {user.payee_account_ref}")

        account = self.gateway.create_payee_account(email, user_id)

        with self.session_factory() as session:
            with session.begin():
                user = session.get(User, user_id)
                if user is None:
                    user = User(id=user_id, created_at=utcnow())
                    session.add(user)
                user.email = email
                user.payee_account_ref = account.account_ref
                user.payee_status = PayeeStatus.PENDING
        logger.info(f"Registered payee account {account.account_ref} for user {user_id}")
        return account
