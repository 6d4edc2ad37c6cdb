import logging
import time
import uuid
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from key2rent.grants import apply_grant
from key2rent.platform_settings import get_settings
from key2rent.models import (
    FAILED,
    PENDING,
    SUCCESS,
    Transaction,
    new_document_id,
    utcnow,
)

logger = logging.getLogger(__name__)

DESCRIPTIONS = {
    "CONTACT_ACCESS": "Contact Access Subscription",
    "VACANCY_LISTING": "Vacancy Listing Payment",
    "FEATURED_LISTING": "Featured Listing Payment",
    "BOOSTED_LISTING": "Boosted Listing Payment",
}


def generate_transaction_id() -> str:
    return f"TXN-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def account_reference(transaction_type: str) -> str:
    return f"KEY2RENT-{transaction_type}"


def create_pending(db: Session, **fields) -> Transaction:
    txn = Transaction(id=new_document_id(), status=PENDING, **fields)
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return txn


def get(db: Session, document_id: str):
    return db.get(Transaction, document_id)


def find_by_checkout_id(db: Session, checkout_request_id: str):
    return db.query(Transaction).filter_by(checkout_request_id=checkout_request_id).first()


def list_for_user(db: Session, user_id: str):
    return (
        db.query(Transaction)
        .filter_by(user_id=user_id)
        .order_by(Transaction.created_at.desc())
        .all()
    )


def list_recent(db: Session, limit: int = 100, status: str = None):
    query = db.query(Transaction)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Transaction.created_at.desc()).limit(limit).all()


def list_stale_pending(db: Session, older_than: timedelta):
    cutoff = utcnow() - older_than
    return (
        db.query(Transaction)
        .filter(Transaction.status == PENDING, Transaction.created_at <= cutoff)
        .order_by(Transaction.created_at)
        .all()
    )


def complete(
    db: Session,
    txn: Transaction,
    success: bool,
    status_message: str = None,
    receipt_number: str = None,
    now: datetime = None,
) -> bool:
    """
    Move a PENDING transaction to SUCCESS or FAILED.

    Status, grant and revenue are written in a single commit. Transactions
    that already left PENDING are never touched again, so a redelivered
    callback cannot grant twice. Returns True when the transaction changed.
    """
    if txn.status != PENDING:
        logger.info("Transaction %s already %s, ignoring", txn.transaction_id, txn.status)
        return False

    now = now or utcnow()
    txn.status = SUCCESS if success else FAILED
    txn.status_message = status_message
    txn.updated_at = now
    txn.completed_at = now

    if success:
        txn.mpesa_receipt_number = receipt_number
        if not txn.grant_applied:
            txn.grant_applied = apply_grant(db, txn, now)

        first_payment = (
            db.query(Transaction.id)
            .filter(
                Transaction.user_id == txn.user_id,
                Transaction.status == SUCCESS,
                Transaction.id != txn.id,
            )
            .first()
            is None
        )

        settings = get_settings(db)
        settings.total_revenue = (settings.total_revenue or 0) + txn.amount
        if first_payment:
            settings.paid_users = (settings.paid_users or 0) + 1
        settings.last_updated = now

    db.commit()
    logger.info("Transaction %s updated to %s", txn.transaction_id, txn.status)
    return True
