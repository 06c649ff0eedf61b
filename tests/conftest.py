"""Pytest fixtures for testing"""

import uuid
import pytest
from typing import Callable, Dict, Generator
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from starlette.background import BackgroundTasks
from jamii_loans.api.main import create_app
from jamii_loans.api.dependencies import get_mail_client, get_mpesa_client
from jamii_loans.domain.models import B2CResponse, StkPushResponse
from jamii_loans.infrastructure.clients.mailer import MailClient
from jamii_loans.infrastructure.clients.mpesa import MpesaClient
from jamii_loans.infrastructure.database.models import Base, User
from jamii_loans.infrastructure.database.repositories import UserRepository
from jamii_loans.infrastructure.database.session import get_db
from jamii_loans.services.loan_ledger import LoanLedger


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def other_db(db: Session) -> Generator[Session, None, None]:
    """Second independent session on the same database, for race scenarios"""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    """Factory for persisted users; keyword arguments override the defaults"""

    def _make_user(**overrides) -> User:
        suffix = uuid.uuid4().hex[:8]
        fields = {
            "full_name": "Wanjiku Kamau",
            "email": f"user-{suffix}@example.com",
            "national_id": str(int(suffix, 16) % 100_000_000).zfill(8),
            "phone": None,
            "is_citizen": True,
            "credit_score": 500,
            "loan_limit": 50_000,
            "total_loans_applied": 0,
            "total_loans_approved": 0,
            "role": "user",
            "is_active": True,
        }
        fields.update(overrides)
        user = UserRepository(db).create(**fields)
        db.commit()
        return user

    return _make_user


@pytest.fixture
def borrower(make_user) -> User:
    return make_user()


@pytest.fixture
def admin(make_user) -> User:
    return make_user(full_name="Loan Officer", role="admin")


@pytest.fixture
def mpesa_client() -> AsyncMock:
    """M-PESA client double that accepts every request"""
    client = AsyncMock(spec=MpesaClient)
    client.initiate_stk_push.return_value = StkPushResponse(
        merchant_request_id="29115-34620561-1",
        checkout_request_id="ws_CO_191220191020363925",
        response_code="0",
        response_description="Success. Request accepted for processing",
    )
    client.initiate_b2c_disbursement.return_value = B2CResponse(
        transaction_id="AG_20191219_00005797af5d7d75f652",
        response_code="0",
        response_description="Accept the service request successfully.",
    )
    return client


@pytest.fixture
def mail_client() -> AsyncMock:
    return AsyncMock(spec=MailClient)


@pytest.fixture
def background_tasks() -> BackgroundTasks:
    return BackgroundTasks()


@pytest.fixture
def ledger(db: Session, mpesa_client: AsyncMock, mail_client: AsyncMock, background_tasks: BackgroundTasks) -> LoanLedger:
    return LoanLedger(db, mpesa_client=mpesa_client, mail_client=mail_client, background_tasks=background_tasks)


@pytest.fixture
def client(db: Session, mpesa_client: AsyncMock, mail_client: AsyncMock) -> TestClient:
    """Create FastAPI test client with test database and gateway doubles"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa_client
    app.dependency_overrides[get_mail_client] = lambda: mail_client
    return TestClient(app)


def auth_headers(user: User) -> Dict[str, str]:
    """Headers the upstream auth layer forwards for an authenticated user"""
    return {"X-User-ID": str(user.id), "X-User-Role": user.role}


def stk_callback(checkout_request_id: str, result_code: int = 0, receipt: str = "NLJ7RT61SV") -> Dict:
    """STK Push callback body as sent by M-PESA"""
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 500},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20191219102115},
                {"Name": "PhoneNumber", "Value": 254708374149},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def b2c_result(conversation_id: str, result_code: int = 0, transaction_id: str = "NLJ41HAY6Q") -> Dict:
    """B2C result body as sent by M-PESA"""
    return {
        "Result": {
            "ResultType": 0,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully." if result_code == 0 else "The balance is insufficient for the transaction.",
            "OriginatorConversationID": "10571-7910404-1",
            "ConversationID": conversation_id,
            "TransactionID": transaction_id,
            "ResultParameters": {
                "ResultParameter": [
                    {"Key": "TransactionAmount", "Value": 10000},
                    {"Key": "ReceiverPartyPublicName", "Value": "254708374149 - John Doe"},
                ]
            },
        }
    }
