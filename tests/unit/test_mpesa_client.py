"""Unit tests for the M-PESA client and callback parsers"""

import base64
import json
import httpx
import pytest
from datetime import datetime, timezone
from jamii_loans.domain.exceptions import GatewayAuthError, GatewayRequestError, InvalidCallbackError
from jamii_loans.infrastructure.clients.mpesa import (
    MpesaClient,
    generate_password,
    parse_b2c_result,
    parse_stk_callback,
)
from jamii_loans.utils.date_utils import format_mpesa_timestamp
from conftest import b2c_result, stk_callback


def gateway(handler):
    """Mock transport that answers OAuth itself and delegates other paths to handler"""

    def dispatch(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": "3599"})
        return handler(request)

    return httpx.MockTransport(dispatch)


def test_generate_password():
    password = generate_password("174379", "passkey", "20240101120000")
    assert base64.b64decode(password).decode() == "174379passkey20240101120000"


def test_timestamp_is_east_africa_time():
    """Timestamps are rendered in UTC+3"""
    moment = datetime(2024, 1, 1, 22, 30, 15, tzinfo=timezone.utc)
    assert format_mpesa_timestamp(moment) == "20240102013015"


async def test_stk_push_success():
    """STK Push sends the full wire body with a bearer token"""
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        )

    client = MpesaClient(base_url="https://mpesa.test", transport=gateway(handler))
    now = datetime(2024, 1, 1, 9, 0, 0, tzinfo=timezone.utc)
    response = await client.initiate_stk_push("254708374149", 500, "loan-1", now=now)

    assert response.checkout_request_id == "ws_CO_191220191020363925"
    assert response.response_code == "0"
    assert captured["auth"] == "Bearer test-token"

    body = captured["body"]
    assert body["Timestamp"] == "20240101120000"
    assert body["TransactionType"] == "CustomerPayBillOnline"
    assert body["Amount"] == 500
    assert body["PartyA"] == "254708374149"
    assert body["PhoneNumber"] == "254708374149"
    assert body["PartyB"] == body["BusinessShortCode"]
    assert body["AccountReference"] == "Loan-loan-1"
    assert body["TransactionDesc"] == "Loan Application Fee Payment"
    assert base64.b64decode(body["Password"]).decode().endswith("20240101120000")


async def test_stk_push_http_error_carries_provider_description():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})

    client = MpesaClient(base_url="https://mpesa.test", transport=gateway(handler))

    with pytest.raises(GatewayRequestError) as exc_info:
        await client.initiate_stk_push("254708374149", 500, "loan-1")

    assert exc_info.value.description == "Bad Request - Invalid Amount"


async def test_stk_push_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = MpesaClient(base_url="https://mpesa.test", transport=gateway(handler))

    with pytest.raises(GatewayRequestError, match="timeout"):
        await client.initiate_stk_push("254708374149", 500, "loan-1")


async def test_stk_push_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = MpesaClient(base_url="https://mpesa.test", transport=gateway(handler))

    with pytest.raises(GatewayRequestError, match="unreachable"):
        await client.initiate_stk_push("254708374149", 500, "loan-1")


async def test_oauth_failure_raises_auth_error():
    """Rejected credentials never reach the payment endpoint"""
    calls = []

    def dispatch(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(401, json={"errorMessage": "Invalid credentials"})

    client = MpesaClient(base_url="https://mpesa.test", transport=httpx.MockTransport(dispatch))

    with pytest.raises(GatewayAuthError):
        await client.initiate_b2c_disbursement("254708374149", 10_000, "loan-1")

    assert calls == ["/oauth/v1/generate"]


async def test_oauth_response_without_token():
    def dispatch(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"expires_in": "3599"})

    client = MpesaClient(base_url="https://mpesa.test", transport=httpx.MockTransport(dispatch))

    with pytest.raises(GatewayAuthError):
        await client.initiate_stk_push("254708374149", 500, "loan-1")


async def test_b2c_disbursement_success():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "ConversationID": "AG_20191219_00005797af5d7d75f652",
                "OriginatorConversationID": "16740-34861180-1",
                "ResponseCode": "0",
                "ResponseDescription": "Accept the service request successfully.",
            },
        )

    client = MpesaClient(base_url="https://mpesa.test", transport=gateway(handler))
    response = await client.initiate_b2c_disbursement("254708374149", 10_000, "loan-1")

    assert response.transaction_id == "AG_20191219_00005797af5d7d75f652"
    body = captured["body"]
    assert body["CommandID"] == "BusinessPayment"
    assert body["PartyB"] == "254708374149"
    assert body["Amount"] == 10_000
    assert body["Remarks"] == "Loan-loan-1"
    assert body["Occassion"] == "Loan Disbursement loan-1"


async def test_b2c_falls_back_to_originator_conversation_id():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"OriginatorConversationID": "16740-34861180-1", "ResponseCode": "0"})

    client = MpesaClient(base_url="https://mpesa.test", transport=gateway(handler))
    response = await client.initiate_b2c_disbursement("254708374149", 10_000, "loan-1")

    assert response.transaction_id == "16740-34861180-1"


async def test_b2c_without_conversation_id_is_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ResponseCode": "1", "ResponseDescription": "Rejected"})

    client = MpesaClient(base_url="https://mpesa.test", transport=gateway(handler))

    with pytest.raises(GatewayRequestError) as exc_info:
        await client.initiate_b2c_disbursement("254708374149", 10_000, "loan-1")

    assert exc_info.value.description == "Rejected"


def test_parse_stk_callback_success():
    result = parse_stk_callback(stk_callback("ws_CO_1", receipt="NLJ7RT61SV"))

    assert result.success is True
    assert result.checkout_request_id == "ws_CO_1"
    assert result.result_code == 0
    assert result.receipt_number == "NLJ7RT61SV"
    assert result.metadata["Amount"] == 500


def test_parse_stk_callback_cancelled():
    """Non-zero result code is a failed payment with no metadata"""
    result = parse_stk_callback(stk_callback("ws_CO_1", result_code=1032))

    assert result.success is False
    assert result.result_code == 1032
    assert result.receipt_number is None


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"Body": {}},
        {"Body": {"stkCallback": {"ResultCode": 0}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": "abc"}}},
        {"Body": "not-an-object"},
    ],
)
def test_parse_stk_callback_malformed(payload):
    with pytest.raises(InvalidCallbackError):
        parse_stk_callback(payload)


def test_parse_b2c_result_success():
    result = parse_b2c_result(b2c_result("AG_1", transaction_id="NLJ41HAY6Q"))

    assert result.success is True
    assert result.conversation_id == "AG_1"
    assert result.originator_conversation_id == "10571-7910404-1"
    assert result.transaction_id == "NLJ41HAY6Q"
    assert result.receiver == "254708374149 - John Doe"


def test_parse_b2c_result_accepts_lowercase_transaction_id_key():
    payload = b2c_result("AG_1", result_code=2001)
    del payload["Result"]["TransactionID"]
    payload["Result"]["TransactionId"] = "NLJ00000"

    result = parse_b2c_result(payload)

    assert result.success is False
    assert result.transaction_id == "NLJ00000"


def test_parse_b2c_result_malformed():
    with pytest.raises(InvalidCallbackError):
        parse_b2c_result({"Result": {"ConversationID": "AG_1"}})
