# handoff_escrow/validation.py
import json
import math
import secrets

from .config import ALLOWED_CURRENCIES, CONFIRMATION_CODE_LENGTH, MAX_AMOUNT
from .errors import ValidationError


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_amount(amount):
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValidationError("amount must be an integer number of minor currency units")
    if amount < 1 or amount > MAX_AMOUNT:
        raise ValidationError(f"amount must be between 1 and {MAX_AMOUNT} minor units")
    return amount


def validate_currency(currency):
    if not isinstance(currency, str) or currency.lower() not in ALLOWED_CURRENCIES:
        raise ValidationError(f"currency must be one of {', '.join(ALLOWED_CURRENCIES)}")
    return currency.lower()


def validate_coordinates(lat, lng):
    if not (_is_number(lat) and _is_number(lng)):
        raise ValidationError("coordinates must be numbers")
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValidationError("coordinates must be finite")
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationError("Invalid coordinates")
    return float(lat), float(lng)


def validate_parties(buyer_id, seller_id):
    for name, value in (("buyer_id", buyer_id), ("seller_id", seller_id)):
        if not isinstance(value, str) or not value:
            raise ValidationError(f"{name} is required")
    if buyer_id == seller_id:
        raise ValidationError("Cannot create transaction with yourself")


def generate_confirmation_code(length=CONFIRMATION_CODE_LENGTH):
    # 100000..999999
    first = str(secrets.randbelow(9) + 1)
    rest = "".join(str(secrets.randbelow(10)) for _ in range(length - 1))
    return first + rest


def build_qr_payload(transaction_id, confirmation_code):
    return json.dumps(
        {"transactionId": transaction_id, "confirmationCode": confirmation_code},
        separators=(",", ":"),
    )


def parse_qr_payload(raw):
    """Decode a scanned QR payload into ``(transaction_id, confirmation_code)``."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str) or not raw:
        raise ValidationError("QR code data required")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("Invalid QR code data format")
    if not isinstance(data, dict):
        raise ValidationError("Invalid QR code data format")
    transaction_id = data.get("transactionId")
    code = data.get("confirmationCode")
    if not isinstance(transaction_id, str) or not isinstance(code, str):
        raise ValidationError("Invalid QR code data format")
    return transaction_id, code
