"""MpesaClient against the local M-PESA sandbox over ASGI"""

import httpx
import pytest
from jamii_loans.domain.exceptions import GatewayRequestError
from jamii_loans.infrastructure.clients.mpesa import MpesaClient
from mpesa_sandbox.main import app as sandbox_app

pytestmark = pytest.mark.integration


@pytest.fixture
def mpesa() -> MpesaClient:
    return MpesaClient(base_url="http://sandbox", transport=httpx.ASGITransport(app=sandbox_app))


async def test_stk_push_accepted(mpesa: MpesaClient):
    response = await mpesa.initiate_stk_push("254708374149", 1_000, "loan-1")

    assert response.response_code == "0"
    assert response.checkout_request_id.startswith("ws_CO_")
    assert response.merchant_request_id


async def test_stk_push_rejected_phone_number(mpesa: MpesaClient):
    with pytest.raises(GatewayRequestError) as exc_info:
        await mpesa.initiate_stk_push("0708374149", 1_000, "loan-1")

    assert exc_info.value.description == "Bad Request - Invalid PhoneNumber"


async def test_b2c_accepted(mpesa: MpesaClient):
    response = await mpesa.initiate_b2c_disbursement("254708374149", 25_000, "loan-1")

    assert response.transaction_id.startswith("AG_")
    assert response.response_description == "Accept the service request successfully."


async def test_b2c_rejected_amount(mpesa: MpesaClient):
    with pytest.raises(GatewayRequestError) as exc_info:
        await mpesa.initiate_b2c_disbursement("254708374149", 0, "loan-1")

    assert exc_info.value.description == "Bad Request - Invalid Amount"


async def test_token_from_another_server_is_refused():
    """Requests carrying a token the sandbox never issued are rejected"""
    sandbox = httpx.ASGITransport(app=sandbox_app)

    async def forged_token(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "forged"})
        return await sandbox.handle_async_request(request)

    mpesa = MpesaClient(base_url="http://sandbox", transport=httpx.MockTransport(forged_token))

    with pytest.raises(GatewayRequestError) as exc_info:
        await mpesa.initiate_b2c_disbursement("254708374149", 25_000, "loan-1")

    assert exc_info.value.description == "Invalid Access Token"


async def test_sandbox_oauth_rejects_wrong_grant():
    transport = httpx.ASGITransport(app=sandbox_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://sandbox") as client:
        response = await client.get("/oauth/v1/generate", params={"grant_type": "password"}, auth=("key", "secret"))

    assert response.status_code == 400
