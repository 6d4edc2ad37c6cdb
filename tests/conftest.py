import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from key2rent import config
from key2rent.config import MpesaConfig
from key2rent.database import Base, get_db
from key2rent.main import app as fastapi_app
from key2rent.mpesa_service import get_mpesa_client
from key2rent.rate_limit import memory_limiter

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_key2rent.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

JWT_SECRET = "test-jwt-secret"
CHECKOUT_REQUEST_ID = "ws_CO_191220191020363925"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    memory_limiter.reset()
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def mpesa_config():
    return MpesaConfig(
        consumer_key="key",
        consumer_secret="secret",
        shortcode="174379",
        passkey="passkey",
        environment="sandbox",
        callback_url="https://example.com/api/mpesa/callback",
    )


@pytest.fixture
def mpesa(mocker):
    """Gateway client double; accepts every STK push with a fresh CheckoutRequestID."""
    client = mocker.Mock()

    def accept(**kwargs):
        n = client.initiate_push.call_count
        return {
            "success": True,
            "checkout_request_id": CHECKOUT_REQUEST_ID if n == 1 else f"{CHECKOUT_REQUEST_ID}-{n}",
            "merchant_request_id": "29115-34620561-1",
            "response_code": "0",
            "response_description": "Success. Request accepted for processing",
            "customer_message": "Success. Request accepted for processing",
        }

    client.initiate_push.side_effect = accept
    return client


@pytest.fixture
def client(monkeypatch, mpesa):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr(config, "JWT_SECRET", JWT_SECRET)
    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_mpesa_client] = lambda: mpesa

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()
