# handoff_escrow/errors.py


class EscrowError(Exception):
    kind = "escrow_error"
    status_code = 400
    retryable = False

    def __init__(self, message=None):
        self.message = message or (self.__doc__ or self.kind).strip()
        super().__init__(self.message)

    def to_dict(self):
        body = {"kind": self.kind, "message": self.message}
        if self.retryable:
            body["retryable"] = True
        return body


class ValidationError(EscrowError):
    """Invalid input"""
    kind = "validation_error"
    status_code = 400


class InvalidSecretError(EscrowError):
    """Confirmation code does not match this handoff"""
    kind = "invalid_secret"
    status_code = 400


class SellerNotPayableError(EscrowError):
    """Seller has not set up a usable payout account"""
    kind = "seller_not_payable"
    status_code = 422


class NotFoundError(EscrowError):
    """Not found"""
    kind = "not_found"
    status_code = 404


class UnauthorizedError(EscrowError):
    """Actor is not a party to this transaction"""
    kind = "unauthorized"
    status_code = 403


class InvalidStateError(EscrowError):
    """Operation is not allowed in the current transaction status"""
    kind = "invalid_state"
    status_code = 409


class ConflictError(EscrowError):
    """A concurrent operation already completed this step"""
    kind = "conflict"
    status_code = 409


class AlreadyConfirmedError(ConflictError):
    """You have already confirmed this handoff"""
    kind = "already_confirmed"


class ExpiredError(EscrowError):
    """Handoff session has expired"""
    kind = "handoff_expired"
    status_code = 410


class GatewayError(EscrowError):
    """Payment processor request failed"""
    kind = "gateway_error"
    status_code = 502


class CaptureError(GatewayError):
    """Failed to release payment, it will be retried"""
    kind = "capture_failed"
    retryable = True


class AlreadyCapturedError(GatewayError):
    """Payment was already captured"""
    kind = "already_captured"


class SignatureError(EscrowError):
    """Webhook signature verification failed"""
    kind = "invalid_signature"
    status_code = 400
