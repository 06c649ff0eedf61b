"""Unit tests for the mail relay client"""

import json
import httpx
from jamii_loans.infrastructure.clients.mailer import LoanMail, MailClient


def mail(**overrides) -> LoanMail:
    fields = {
        "email": "wanjiku@example.com",
        "full_name": "Wanjiku Kamau",
        "loan_id": "7b1e6a52-4f0c-4c1e-9d7a-0c8f2d8b9a11",
        "amount": 25_000,
        "fee_amount": 2_500,
        "fee_paid": False,
    }
    fields.update(overrides)
    return LoanMail(**fields)


def relay_client(responses, sent):
    """MailClient whose relay answers with the given status codes in order"""
    statuses = iter(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(next(statuses))

    client = MailClient(relay_url="https://relay.test/send", transport=httpx.MockTransport(handler))
    client.backoff_base = 0
    return client


async def test_send_success():
    sent = []
    client = relay_client([202], sent)

    assert await client.send("wanjiku@example.com", "Subject", "Body") is True
    assert sent == [
        {"from": client.sender, "to": "wanjiku@example.com", "subject": "Subject", "text": "Body"}
    ]


async def test_send_retries_server_errors():
    """5xx responses are retried with backoff until the relay accepts"""
    sent = []
    client = relay_client([503, 502, 200], sent)

    assert await client.send("wanjiku@example.com", "Subject", "Body") is True
    assert len(sent) == 3


async def test_send_gives_up_without_raising():
    sent = []
    client = relay_client([500, 500, 500, 500], sent)

    assert await client.send("wanjiku@example.com", "Subject", "Body") is False
    assert len(sent) == client.max_retries


async def test_send_survives_network_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("relay down", request=request)

    client = MailClient(relay_url="https://relay.test/send", transport=httpx.MockTransport(handler))
    client.backoff_base = 0

    assert await client.send_loan_application_email(mail()) is False


async def test_approval_email_mentions_unpaid_fee():
    sent = []
    client = relay_client([200], sent)

    assert await client.send_loan_approval_email(mail()) is True
    assert sent[0]["subject"] == "JAMII Loan - Application Approved!"
    assert "KSh 2,500 (Pending Payment)" in sent[0]["text"]
    assert "Next step" in sent[0]["text"]


async def test_rejection_and_disbursement_emails():
    sent = []
    client = relay_client([200, 200], sent)

    await client.send_loan_rejection_email(mail(rejection_reason="Incomplete documents"))
    await client.send_loan_disbursement_email(mail(disbursement_reference="AG_20191219_0000"))

    assert "Reason: Incomplete documents" in sent[0]["text"]
    assert "Reference: AG_20191219_0000" in sent[1]["text"]
