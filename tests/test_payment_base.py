import pytest

from checkout.services.payment import (
    CountryCode,
    PaymentRequest,
    TransactionState,
    TransactionStatus,
    ValidationError,
    gateway_amount,
    normalize_phone_number,
    validate_amount,
)


@pytest.mark.parametrize(
    "amount, expected",
    [
        (15000, 15000),
        (100, 100),
        (99, 100),
        (0, 100),
        (-500, 100),
        (12.4, 100),
        (150.4, 150),
        (150.5, 151),
        (2500.49, 2500),
    ],
)
def test_gateway_amount_rounds_and_floors(amount, expected):
    assert gateway_amount(amount) == expected


def test_gateway_amount_is_always_an_int():
    assert isinstance(gateway_amount(1234.6), int)


@pytest.mark.parametrize("amount", [float("inf"), float("-inf"), float("nan")])
def test_gateway_amount_rejects_non_finite_amounts(amount):
    with pytest.raises(ValidationError):
        gateway_amount(amount)


@pytest.mark.parametrize(
    "amount, message",
    [
        (None, "Invalid amount"),
        (float("inf"), "Invalid amount"),
        (float("nan"), "Invalid amount"),
        (0, "Amount must be greater than 0"),
        (-10, "Amount must be greater than 0"),
    ],
)
def test_validate_amount(amount, message):
    with pytest.raises(ValidationError) as exc_info:
        validate_amount(amount)
    assert exc_info.value.message == message

    validate_amount(0.5)


def test_payment_request_exposes_gateway_amount():
    request = PaymentRequest("+243812345678", 42.7, CountryCode.DRC)
    assert request.gateway_amount == 100


@pytest.mark.parametrize(
    "raw, country, expected",
    [
        ("081 234 5678", CountryCode.DRC, "+243812345678"),
        ("0812345678", "DRC", "+243812345678"),
        ("0712345678", CountryCode.KE, "+254712345678"),
        ("0772345678", CountryCode.UG, "+256772345678"),
        ("812345678", CountryCode.DRC, "+243812345678"),
        ("+243812345678", CountryCode.KE, "+243812345678"),
        ("  +254 712 345 678 ", CountryCode.KE, "+254712345678"),
    ],
)
def test_normalize_phone_number(raw, country, expected):
    assert normalize_phone_number(raw, country) == expected


@pytest.mark.parametrize("raw", ["", "   ", None])
def test_empty_phone_number_is_rejected(raw):
    with pytest.raises(ValidationError):
        normalize_phone_number(raw, CountryCode.DRC)


def test_malformed_phone_number_is_rejected():
    with pytest.raises(ValidationError):
        normalize_phone_number("08-abc-123", CountryCode.DRC)


def test_country_dial_prefixes_and_currencies():
    assert CountryCode.DRC.dial_prefix == "+243"
    assert CountryCode.KE.currency == "KES"
    assert CountryCode.UG.dial_prefix == "+256"


def test_unknown_provider_status_reads_as_pending():
    assert TransactionState.parse("processing") == TransactionState.PENDING
    assert TransactionState.parse(None) == TransactionState.PENDING
    assert TransactionState.parse("COMPLETED") == TransactionState.COMPLETED


def test_transaction_status_from_payload():
    status = TransactionStatus.from_payload(
        {"id": "tx9", "status": "failed", "failureReason": "Insufficient balance"}
    )
    assert status.id == "tx9"
    assert status.is_failed
    assert not status.is_completed
    assert status.failure_reason == "Insufficient balance"
    assert status.raw["status"] == "failed"


def test_transaction_status_falls_back_to_requested_id():
    status = TransactionStatus.from_payload({"status": "completed"}, "tx5")
    assert status.id == "tx5"
    assert status.is_completed
