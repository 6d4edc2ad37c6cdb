import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String

from key2rent.database import Base

TRANSACTION_TYPES = ("CONTACT_ACCESS", "VACANCY_LISTING", "FEATURED_LISTING", "BOOSTED_LISTING")
LISTING_TYPES = ("VACANCY_LISTING", "FEATURED_LISTING", "BOOSTED_LISTING")

PENDING = "PENDING"
SUCCESS = "SUCCESS"
FAILED = "FAILED"
CANCELLED = "CANCELLED"
TERMINAL_STATUSES = (SUCCESS, FAILED, CANCELLED)


def utcnow() -> datetime:
    # naive UTC, which is what SQLite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_document_id() -> str:
    return uuid.uuid4().hex


def _iso(value):
    return value.isoformat() + "Z" if value else None


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=new_document_id)
    transaction_id = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    user_email = Column(String)
    user_name = Column(String)

    type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)            # KES
    phone_number = Column(String, nullable=False)       # 254XXXXXXXXX
    listing_id = Column(String)

    checkout_request_id = Column(String, unique=True, index=True)
    merchant_request_id = Column(String)
    mpesa_receipt_number = Column(String)

    status = Column(String, nullable=False, default=PENDING)   # PENDING | SUCCESS | FAILED | CANCELLED
    status_message = Column(String)
    grant_applied = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime)
    completed_at = Column(DateTime)

    ip_address = Column(String)
    user_agent = Column(String)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "userId": self.user_id,
            "userEmail": self.user_email,
            "userName": self.user_name,
            "type": self.type,
            "amount": self.amount,
            "phoneNumber": self.phone_number,
            "listingId": self.listing_id,
            "checkoutRequestID": self.checkout_request_id,
            "merchantRequestID": self.merchant_request_id,
            "mpesaReceiptNumber": self.mpesa_receipt_number,
            "status": self.status,
            "statusMessage": self.status_message,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
        }


class MpesaCallback(Base):
    __tablename__ = "mpesa_callbacks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    data = Column(JSON)
    received_at = Column(DateTime, nullable=False, default=utcnow)


class PlatformSettings(Base):
    __tablename__ = "platform_settings"

    id = Column(String, primary_key=True, default="config")
    contact_payment_enabled = Column(Boolean, nullable=False, default=False)
    contact_payment_amount = Column(Integer, nullable=False, default=100)
    featured_listings_enabled = Column(Boolean, nullable=False, default=False)
    featured_listing_price = Column(Integer, nullable=False, default=500)
    boosted_vacancy_enabled = Column(Boolean, nullable=False, default=False)
    boosted_vacancy_price = Column(Integer, nullable=False, default=300)
    total_revenue = Column(Integer, nullable=False, default=0)
    paid_users = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, default=utcnow)
    updated_by = Column(String, default="system")


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String)
    name = Column(String)
    can_view_contacts = Column(Boolean, nullable=False, default=False)
    contact_access_expires_at = Column(DateTime)
    last_contact_payment_date = Column(DateTime)
    total_contact_payments = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    total_transactions = Column(Integer, nullable=False, default=0)
    last_transaction_date = Column(DateTime)


class Listing(Base):
    __tablename__ = "listings"

    id = Column(String, primary_key=True)
    landlord_id = Column(String, index=True)
    status = Column(String)                              # Vacant | Occupied | ...
    is_featured = Column(Boolean, nullable=False, default=False)
    featured_until = Column(DateTime)
    featured_paid_at = Column(DateTime)
    featured_paid_amount = Column(Integer)
    is_boosted = Column(Boolean, nullable=False, default=False)
    boosted_until = Column(DateTime)
    boosted_paid_at = Column(DateTime)
    boosted_paid_amount = Column(Integer)
    vacancy_paid_at = Column(DateTime)
    vacancy_paid_amount = Column(Integer)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, index=True)
    action = Column(String, nullable=False)
    amount = Column(Integer)
    success = Column(Boolean)
    reference = Column(String)
    details = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class RateLimitHit(Base):
    __tablename__ = "rate_limit_hits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String, index=True, nullable=False)
    hit_at = Column(DateTime, index=True, nullable=False, default=utcnow)


class RateLimitBucket(Base):
    """One row per limiter key; updating it serializes checks on that key."""

    __tablename__ = "rate_limit_buckets"

    key = Column(String, primary_key=True)
    touched_at = Column(DateTime, nullable=False, default=utcnow)
