import inspect
from datetime import timedelta

from key2rent.callback import mpesa_callback
from key2rent.models import (
    AuditLog,
    Listing,
    MpesaCallback,
    PlatformSettings,
    Transaction,
    User,
    utcnow,
)
from tests.conftest import TestingSessionLocal

CHECKOUT_ID = "ws_CO_191220191020363925"


def _callback(checkout_id=CHECKOUT_ID, result_code=0, result_desc=None, receipt="NLJ7RT61SV"):
    stk_callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or (
            "The service request is processed successfully." if result_code == 0 else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        items = [
            {"Name": "Amount", "Value": 100},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]
        if receipt:
            items.insert(1, {"Name": "MpesaReceiptNumber", "Value": receipt})
        stk_callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": stk_callback}}


def _initiate(client, **overrides):
    payload = {
        "amount": 100,
        "type": "CONTACT_ACCESS",
        "phoneNumber": "0712345678",
        "userId": "u1",
        **overrides,
    }
    response = client.post("/api/mpesa/stk-push", json=payload)
    assert response.status_code == 200
    return response.json()


def _seed(*rows):
    db = TestingSessionLocal()
    db.add_all(rows)
    db.commit()
    db.close()


def test_scenario_a_contact_access_success(client):
    """Initiate, receive a successful callback, user can view contacts for 30 days."""
    _seed(User(id="u1", email="tenant@example.com"))

    initiated = _initiate(client)

    db = TestingSessionLocal()
    txn = db.get(Transaction, initiated["documentId"])
    assert txn.status == "PENDING"
    assert txn.phone_number == "254712345678"
    db.close()

    response = client.post("/api/mpesa/callback", json=_callback())

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    db = TestingSessionLocal()
    txn = db.get(Transaction, initiated["documentId"])
    assert txn.status == "SUCCESS"
    assert txn.mpesa_receipt_number == "NLJ7RT61SV"
    assert txn.status_message == "The service request is processed successfully."
    assert txn.completed_at is not None
    assert txn.grant_applied is True

    user = db.get(User, "u1")
    assert user.can_view_contacts is True
    expected_expiry = utcnow() + timedelta(days=30)
    assert abs((user.contact_access_expires_at - expected_expiry).total_seconds()) < 60
    assert user.total_contact_payments == 100
    assert user.total_spent == 100
    assert user.total_transactions == 1

    settings = db.get(PlatformSettings, "config")
    assert settings.total_revenue == 100
    assert settings.paid_users == 1

    assert db.query(MpesaCallback).count() == 1
    audit = db.query(AuditLog).one()
    assert audit.success is True
    assert audit.reference == CHECKOUT_ID
    db.close()

    status = client.get(f"/api/mpesa/transactions/{initiated['documentId']}").json()
    assert status["status"] == "SUCCESS"
    assert status["mpesaReceiptNumber"] == "NLJ7RT61SV"


def test_scenario_b_user_cancelled(client):
    _seed(User(id="u1"))
    initiated = _initiate(client)

    response = client.post("/api/mpesa/callback", json=_callback(result_code=1032))

    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    db = TestingSessionLocal()
    txn = db.get(Transaction, initiated["documentId"])
    assert txn.status == "FAILED"
    assert txn.status_message == "Request cancelled by user"
    assert txn.mpesa_receipt_number is None
    assert txn.grant_applied is False

    user = db.get(User, "u1")
    assert user.can_view_contacts is False
    assert user.contact_access_expires_at is None
    assert db.get(PlatformSettings, "config") is None

    audit = db.query(AuditLog).one()
    assert audit.success is False
    db.close()


def test_scenario_c_unknown_checkout_request(client):
    _seed(User(id="u1"))
    initiated = _initiate(client)

    response = client.post("/api/mpesa/callback", json=_callback(checkout_id="ws_CO_unknown"))

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    db = TestingSessionLocal()
    assert db.query(Transaction).count() == 1
    assert db.get(Transaction, initiated["documentId"]).status == "PENDING"
    assert db.get(User, "u1").can_view_contacts is False
    assert db.query(AuditLog).count() == 0
    assert db.get(PlatformSettings, "config") is None
    db.close()


def test_scenario_d_featured_listing_without_listing_id(client):
    _seed(User(id="u1"), Listing(id="l1", landlord_id="u1", status="Occupied"))
    initiated = _initiate(client, type="FEATURED_LISTING", amount=500)

    client.post("/api/mpesa/callback", json=_callback())

    db = TestingSessionLocal()
    txn = db.get(Transaction, initiated["documentId"])
    assert txn.status == "SUCCESS"
    assert txn.grant_applied is False
    assert db.get(Listing, "l1").is_featured is False
    db.close()


def test_featured_listing_success(client):
    _seed(User(id="u1"), Listing(id="l1", landlord_id="u1", status="Occupied"))
    _initiate(client, type="FEATURED_LISTING", amount=500, listingId="l1")

    client.post("/api/mpesa/callback", json=_callback())

    db = TestingSessionLocal()
    listing = db.get(Listing, "l1")
    assert listing.is_featured is True
    assert listing.featured_paid_amount == 500
    assert abs((listing.featured_until - (utcnow() + timedelta(days=30))).total_seconds()) < 60
    db.close()


def test_boosted_listing_success(client):
    _seed(User(id="u1"), Listing(id="l1", landlord_id="u1"))
    _initiate(client, type="BOOSTED_LISTING", amount=300, listingId="l1")

    client.post("/api/mpesa/callback", json=_callback())

    db = TestingSessionLocal()
    listing = db.get(Listing, "l1")
    assert listing.is_boosted is True
    assert abs((listing.boosted_until - (utcnow() + timedelta(days=7))).total_seconds()) < 60
    db.close()


def test_vacancy_listing_success(client):
    _seed(User(id="u1"), Listing(id="l1", landlord_id="u1", status="Occupied"))
    _initiate(client, type="VACANCY_LISTING", amount=200, listingId="l1")

    client.post("/api/mpesa/callback", json=_callback())

    db = TestingSessionLocal()
    listing = db.get(Listing, "l1")
    assert listing.status == "Vacant"
    assert listing.vacancy_paid_amount == 200
    db.close()


def test_replayed_callback_does_not_grant_twice(client):
    _seed(User(id="u1"))
    initiated = _initiate(client)

    first = client.post("/api/mpesa/callback", json=_callback())
    second = client.post("/api/mpesa/callback", json=_callback())

    assert first.json() == second.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    db = TestingSessionLocal()
    user = db.get(User, "u1")
    assert user.total_contact_payments == 100
    assert user.total_transactions == 1
    assert db.get(PlatformSettings, "config").total_revenue == 100
    assert db.query(AuditLog).count() == 1
    # both deliveries are still kept in the raw audit trail
    assert db.query(MpesaCallback).count() == 2
    assert db.get(Transaction, initiated["documentId"]).status == "SUCCESS"
    db.close()


def test_failure_after_success_is_ignored(client):
    _seed(User(id="u1"))
    initiated = _initiate(client)

    client.post("/api/mpesa/callback", json=_callback())
    client.post("/api/mpesa/callback", json=_callback(result_code=1))

    db = TestingSessionLocal()
    txn = db.get(Transaction, initiated["documentId"])
    assert txn.status == "SUCCESS"
    assert txn.mpesa_receipt_number == "NLJ7RT61SV"
    db.close()


def test_success_without_receipt_still_settles(client):
    _seed(User(id="u1"))
    initiated = _initiate(client)

    client.post("/api/mpesa/callback", json=_callback(receipt=None))

    db = TestingSessionLocal()
    txn = db.get(Transaction, initiated["documentId"])
    assert txn.status == "SUCCESS"
    assert txn.mpesa_receipt_number is None
    assert db.get(User, "u1").can_view_contacts is True
    db.close()


def test_malformed_callbacks_are_acknowledged(client):
    for body in ({}, {"Body": {}}, {"Body": {"stkCallback": {"ResultCode": 0}}}):
        response = client.post("/api/mpesa/callback", json=body)
        assert response.status_code == 200
        assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    response = client.post("/api/mpesa/callback", content="not json",
                           headers={"content-type": "application/json"})
    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}


def test_internal_error_is_swallowed(client, mocker):
    _seed(User(id="u1"))
    initiated = _initiate(client)
    mocker.patch("key2rent.transactions.apply_grant", side_effect=RuntimeError("db down"))

    response = client.post("/api/mpesa/callback", json=_callback())

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    # nothing was committed, so the transaction can still be settled later
    db = TestingSessionLocal()
    assert db.get(Transaction, initiated["documentId"]).status == "PENDING"
    db.close()


def test_callback_rate_limit(client):
    for _ in range(50):
        client.post("/api/mpesa/callback", json={})

    _seed(User(id="u1"))
    # the stk-push limit is per user, so this one still goes through
    initiated = _initiate(client)
    response = client.post("/api/mpesa/callback", json=_callback())

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    db = TestingSessionLocal()
    assert db.get(Transaction, initiated["documentId"]).status == "PENDING"
    assert db.query(MpesaCallback).count() == 50
    db.close()


def test_callback_endpoint_health_check(client):
    response = client.get("/api/mpesa/callback")
    assert response.status_code == 200
    assert response.json() == {"message": "M-Pesa callback endpoint active"}


def test_callback_handler_runs_in_threadpool():
    # database work in the handler must not block the event loop
    assert not inspect.iscoroutinefunction(mpesa_callback)


def test_paid_users_counts_each_paying_user_once(client):
    _seed(User(id="u1"), User(id="u2"))

    first = _initiate(client)
    client.post("/api/mpesa/callback", json=_callback(checkout_id=first["checkoutRequestID"]))
    second = _initiate(client)
    client.post("/api/mpesa/callback", json=_callback(checkout_id=second["checkoutRequestID"], receipt="NLJ7RT61SW"))
    other = _initiate(client, userId="u2")
    client.post("/api/mpesa/callback", json=_callback(checkout_id=other["checkoutRequestID"], receipt="NLJ7RT61SX"))

    db = TestingSessionLocal()
    settings = db.get(PlatformSettings, "config")
    assert settings.total_revenue == 300
    assert settings.paid_users == 2
    db.close()
