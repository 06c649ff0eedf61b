"""M-PESA (Daraja) HTTP client for STK Push collection and B2C disbursement"""

import base64
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from jamii_loans.config import settings
from jamii_loans.domain.exceptions import GatewayAuthError, GatewayRequestError, InvalidCallbackError
from jamii_loans.domain.models import B2CCallbackResult, B2CResponse, StkCallbackResult, StkPushResponse
from jamii_loans.infrastructure.observability.metrics import gateway_failure_counter, gateway_latency_histogram
from jamii_loans.utils.date_utils import format_mpesa_timestamp

logger = logging.getLogger(__name__)

OAUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
B2C_PATH = "/mpesa/b2c/v1/paymentrequest"


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """STK Push password: base64(shortcode + passkey + timestamp)"""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def _provider_description(response: httpx.Response) -> Optional[str]:
    """Pull the provider's error description out of a failed response, if any"""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    return body.get("errorMessage") or body.get("ResponseDescription")


class MpesaClient:
    """Client for the M-PESA OAuth, STK Push and B2C APIs"""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.mpesa_base_url
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport
        self.shortcode = settings.mpesa_shortcode
        self.passkey = settings.mpesa_passkey

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def get_access_token(self, client: httpx.AsyncClient) -> str:
        """
        Exchange consumer key/secret for a bearer token (client credentials).

        Raises:
            GatewayAuthError: On timeout, HTTP errors, or a response without a token
        """
        try:
            with gateway_latency_histogram.labels(operation="oauth").time():
                response = await client.get(
                    OAUTH_PATH,
                    params={"grant_type": "client_credentials"},
                    auth=(settings.mpesa_consumer_key, settings.mpesa_consumer_secret),
                )
            response.raise_for_status()
            return response.json()["access_token"]

        except httpx.TimeoutException as e:
            gateway_failure_counter.labels(operation="oauth").inc()
            raise GatewayAuthError(f"M-PESA OAuth timeout after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            gateway_failure_counter.labels(operation="oauth").inc()
            raise GatewayAuthError(f"M-PESA OAuth error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            gateway_failure_counter.labels(operation="oauth").inc()
            raise GatewayAuthError(f"M-PESA OAuth unreachable: {e}") from e
        except (KeyError, ValueError, TypeError) as e:
            gateway_failure_counter.labels(operation="oauth").inc()
            raise GatewayAuthError(f"Invalid OAuth response from M-PESA: {e}") from e

    async def _post(self, operation: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Authenticate then POST a payload, mapping transport failures to GatewayRequestError"""
        async with self._client() as client:
            token = await self.get_access_token(client)
            try:
                with gateway_latency_histogram.labels(operation=operation).time():
                    response = await client.post(
                        path,
                        json=payload,
                        headers={"Authorization": f"Bearer {token}"},
                    )
                response.raise_for_status()
                data = response.json()
                if not isinstance(data, dict):
                    raise TypeError("response body is not an object")
                return data

            except httpx.TimeoutException as e:
                gateway_failure_counter.labels(operation=operation).inc()
                raise GatewayRequestError(f"M-PESA {operation} timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                gateway_failure_counter.labels(operation=operation).inc()
                raise GatewayRequestError(
                    f"M-PESA {operation} error: {e.response.status_code}",
                    description=_provider_description(e.response),
                ) from e
            except httpx.RequestError as e:
                gateway_failure_counter.labels(operation=operation).inc()
                raise GatewayRequestError(f"M-PESA {operation} unreachable: {e}") from e
            except (ValueError, TypeError) as e:
                gateway_failure_counter.labels(operation=operation).inc()
                raise GatewayRequestError(f"Invalid {operation} response from M-PESA: {e}") from e

    async def initiate_stk_push(
        self,
        phone_number: str,
        amount: int,
        loan_id: Any,
        now: datetime | None = None,
    ) -> StkPushResponse:
        """
        Push a payment prompt for the loan processing fee to the payer's phone.

        Raises:
            GatewayAuthError: Token exchange failed
            GatewayRequestError: Push request failed or timed out
        """
        timestamp = format_mpesa_timestamp(now)
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": generate_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": self.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": settings.mpesa_callback_url,
            "AccountReference": f"Loan-{loan_id}",
            "TransactionDesc": "Loan Application Fee Payment",
        }
        data = await self._post("stk_push", STK_PUSH_PATH, payload)

        try:
            return StkPushResponse(
                merchant_request_id=data["MerchantRequestID"],
                checkout_request_id=data["CheckoutRequestID"],
                response_code=str(data["ResponseCode"]),
                response_description=data.get("ResponseDescription", ""),
            )
        except KeyError as e:
            gateway_failure_counter.labels(operation="stk_push").inc()
            raise GatewayRequestError(
                f"STK Push response missing {e}",
                description=data.get("ResponseDescription") or data.get("errorMessage"),
            ) from e

    async def initiate_b2c_disbursement(self, phone_number: str, amount: int, loan_id: Any) -> B2CResponse:
        """
        Request a business-to-customer payment of the loan principal.

        The response only confirms the request was accepted for processing; the
        outcome arrives later on the result URL.

        Raises:
            GatewayAuthError: Token exchange failed
            GatewayRequestError: Payment request failed or timed out
        """
        payload = {
            "InitiatorName": settings.mpesa_initiator_name,
            "SecurityCredential": settings.mpesa_security_credential,
            "CommandID": "BusinessPayment",
            "Amount": amount,
            "PartyA": self.shortcode,
            "PartyB": phone_number,
            "Remarks": f"Loan-{loan_id}",
            "QueueTimeOutURL": settings.mpesa_queue_timeout_url,
            "ResultURL": settings.mpesa_result_url,
            "Occassion": f"Loan Disbursement {loan_id}",
        }
        data = await self._post("b2c", B2C_PATH, payload)

        transaction_id = data.get("ConversationID") or data.get("OriginatorConversationID")
        if not transaction_id:
            gateway_failure_counter.labels(operation="b2c").inc()
            raise GatewayRequestError(
                "B2C response missing ConversationID",
                description=data.get("ResponseDescription") or data.get("errorMessage"),
            )
        return B2CResponse(
            transaction_id=transaction_id,
            response_code=str(data.get("ResponseCode", "")),
            response_description=data.get("ResponseDescription", ""),
        )


def parse_stk_callback(payload: Dict[str, Any]) -> StkCallbackResult:
    """
    Parse an STK Push callback body.

    Shape: Body.stkCallback.{MerchantRequestID, CheckoutRequestID, ResultCode,
    ResultDesc, CallbackMetadata.Item[]}. ResultCode 0 means the payer completed
    the payment; metadata items are reduced to a name -> value map.

    Raises:
        InvalidCallbackError: Payload does not have the expected structure
    """
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = callback["CheckoutRequestID"]
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidCallbackError(f"Malformed STK callback: {e}") from e

    metadata: Dict[str, Any] = {}
    if result_code == 0:
        items = (callback.get("CallbackMetadata") or {}).get("Item") or []
        for item in items:
            if isinstance(item, dict) and "Name" in item:
                metadata[item["Name"]] = item.get("Value")

    return StkCallbackResult(
        success=result_code == 0,
        merchant_request_id=callback.get("MerchantRequestID"),
        checkout_request_id=checkout_request_id,
        result_code=result_code,
        result_description=callback.get("ResultDesc", ""),
        metadata=metadata,
    )


def parse_b2c_result(payload: Dict[str, Any]) -> B2CCallbackResult:
    """
    Parse a B2C result (or queue timeout) body.

    Shape: Result.{ResultCode, ResultDesc, TransactionID, ConversationID,
    OriginatorConversationID, ResultParameters.ResultParameter[]}.

    Raises:
        InvalidCallbackError: Payload does not have the expected structure
    """
    try:
        result = payload["Result"]
        result_code = int(result["ResultCode"])
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidCallbackError(f"Malformed B2C result: {e}") from e

    parameters: Dict[str, Any] = {}
    raw_parameters = (result.get("ResultParameters") or {}).get("ResultParameter") or []
    if isinstance(raw_parameters, dict):
        raw_parameters = [raw_parameters]
    for item in raw_parameters:
        if isinstance(item, dict) and "Key" in item:
            parameters[item["Key"]] = item.get("Value")

    receiver = result.get("ReceiverPartyPublicName") or parameters.get("ReceiverPartyPublicName")

    return B2CCallbackResult(
        success=result_code == 0,
        result_code=result_code,
        result_description=result.get("ResultDesc", ""),
        transaction_id=result.get("TransactionID") or result.get("TransactionId"),
        conversation_id=result.get("ConversationID"),
        originator_conversation_id=result.get("OriginatorConversationID"),
        receiver=receiver,
    )
