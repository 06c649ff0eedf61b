"""Local stand-in for the M-PESA Daraja sandbox (OAuth, STK Push, B2C)"""

import base64
import secrets
import uuid
from datetime import datetime
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

app = FastAPI(title="Mock M-PESA Server", version="1.0.0")

# Bearer tokens issued by this process
TOKENS = set()
B2C_COMMANDS = {"BusinessPayment", "SalaryPayment", "PromotionPayment"}


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"requestId": uuid.uuid4().hex, "errorCode": code, "errorMessage": message},
    )


def _valid_msisdn(value) -> bool:
    return isinstance(value, str) and value.isdigit() and len(value) == 12 and value.startswith("254")


def _valid_amount(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@app.get("/health")
def health(): return {"status": "ok"}


@app.get("/oauth/v1/generate")
def generate_token(grant_type: str = "", authorization: str | None = Header(default=None)):
    if grant_type != "client_credentials":
        return _error(400, "400.008.02", "Invalid grant type passed")
    if not authorization or not authorization.startswith("Basic "):
        return _error(400, "400.008.01", "Invalid Authentication passed")
    token = secrets.token_urlsafe(24)
    TOKENS.add(token)
    return {"access_token": token, "expires_in": "3599"}


@app.post("/mpesa/stkpush/v1/processrequest")
async def stk_push(request: Request, authorization: str | None = Header(default=None)):
    if authorization is None or authorization.removeprefix("Bearer ") not in TOKENS:
        return _error(401, "404.001.03", "Invalid Access Token")
    body = await request.json()

    shortcode, timestamp = str(body.get("BusinessShortCode", "")), str(body.get("Timestamp", ""))
    try:
        password = base64.b64decode(body.get("Password", ""), validate=True).decode()
    except ValueError:
        password = ""
    if not (shortcode and timestamp and password.startswith(shortcode) and password.endswith(timestamp)):
        return _error(400, "400.002.02", "Bad Request - Invalid Password")
    if not _valid_amount(body.get("Amount")):
        return _error(400, "400.002.02", "Bad Request - Invalid Amount")
    if not _valid_msisdn(body.get("PhoneNumber")) or body.get("PartyA") != body.get("PhoneNumber"):
        return _error(400, "400.002.02", "Bad Request - Invalid PhoneNumber")
    if not body.get("CallBackURL"):
        return _error(400, "400.002.02", "Bad Request - Invalid CallBackURL")

    now = datetime.now()
    return {
        "MerchantRequestID": f"{secrets.randbelow(90000) + 10000}-{secrets.randbelow(9 * 10**7) + 10**7}-1",
        "CheckoutRequestID": f"ws_CO_{now:%d%m%Y%H%M%S}{secrets.randbelow(10**6):06d}",
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    }


@app.post("/mpesa/b2c/v1/paymentrequest")
async def b2c_payment(request: Request, authorization: str | None = Header(default=None)):
    if authorization is None or authorization.removeprefix("Bearer ") not in TOKENS:
        return _error(401, "404.001.03", "Invalid Access Token")
    body = await request.json()

    if body.get("CommandID") not in B2C_COMMANDS:
        return _error(400, "400.002.02", "Bad Request - Invalid CommandID")
    if not body.get("InitiatorName"):
        return _error(400, "400.002.02", "Bad Request - Invalid InitiatorName")
    if not _valid_amount(body.get("Amount")):
        return _error(400, "400.002.02", "Bad Request - Invalid Amount")
    if not _valid_msisdn(body.get("PartyB")):
        return _error(400, "400.002.02", "Bad Request - Invalid PartyB")
    if not (body.get("ResultURL") and body.get("QueueTimeOutURL")):
        return _error(400, "400.002.02", "Bad Request - Invalid ResultURL")

    return {
        "ConversationID": f"AG_{datetime.now():%Y%m%d}_{secrets.token_hex(10)}",
        "OriginatorConversationID": f"{secrets.randbelow(90000) + 10000}-{secrets.randbelow(9 * 10**7) + 10**7}-1",
        "ResponseCode": "0",
        "ResponseDescription": "Accept the service request successfully.",
    }
