"""
Permission grants applied when a payment succeeds.

CONTACT_ACCESS    user may view landlord contacts for 30 days
FEATURED_LISTING  listing is featured for 30 days
BOOSTED_LISTING   listing is boosted for 7 days
VACANCY_LISTING   listing status becomes "Vacant"
"""

import logging
import math
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from key2rent.models import Listing, Transaction, User

logger = logging.getLogger(__name__)

CONTACT_ACCESS_DAYS = 30
FEATURED_DAYS = 30
BOOSTED_DAYS = 7
RENEWAL_WARNING_DAYS = 3


def _grant_contact_access(db: Session, txn: Transaction, now: datetime) -> bool:
    user = db.get(User, txn.user_id)
    if user is None:
        logger.error("No user %s to grant contact access for %s", txn.user_id, txn.transaction_id)
        return False

    user.can_view_contacts = True
    user.contact_access_expires_at = now + timedelta(days=CONTACT_ACCESS_DAYS)
    user.last_contact_payment_date = now
    user.total_contact_payments = (user.total_contact_payments or 0) + txn.amount
    return True


def _get_listing(db: Session, txn: Transaction):
    if not txn.listing_id:
        logger.error("No listingId provided for %s (%s)", txn.type, txn.transaction_id)
        return None
    listing = db.get(Listing, txn.listing_id)
    if listing is None:
        logger.error("Listing %s not found for %s", txn.listing_id, txn.transaction_id)
    return listing


def _grant_featured(db: Session, txn: Transaction, now: datetime) -> bool:
    listing = _get_listing(db, txn)
    if listing is None:
        return False
    listing.is_featured = True
    listing.featured_until = now + timedelta(days=FEATURED_DAYS)
    listing.featured_paid_at = now
    listing.featured_paid_amount = txn.amount
    return True


def _grant_boosted(db: Session, txn: Transaction, now: datetime) -> bool:
    listing = _get_listing(db, txn)
    if listing is None:
        return False
    listing.is_boosted = True
    listing.boosted_until = now + timedelta(days=BOOSTED_DAYS)
    listing.boosted_paid_at = now
    listing.boosted_paid_amount = txn.amount
    return True


def _grant_vacancy(db: Session, txn: Transaction, now: datetime) -> bool:
    listing = _get_listing(db, txn)
    if listing is None:
        return False
    listing.status = "Vacant"
    listing.vacancy_paid_at = now
    listing.vacancy_paid_amount = txn.amount
    return True


GRANTS = {
    "CONTACT_ACCESS": _grant_contact_access,
    "FEATURED_LISTING": _grant_featured,
    "BOOSTED_LISTING": _grant_boosted,
    "VACANCY_LISTING": _grant_vacancy,
}


def apply_grant(db: Session, txn: Transaction, now: datetime) -> bool:
    """Stage the grant for ``txn`` on the session. Returns False when nothing was granted."""
    grant = GRANTS.get(txn.type)
    if grant is None:
        logger.error("Unknown transaction type %s on %s", txn.type, txn.transaction_id)
        return False

    granted = grant(db, txn, now)

    user = db.get(User, txn.user_id)
    if user is not None:
        user.total_spent = (user.total_spent or 0) + txn.amount
        user.total_transactions = (user.total_transactions or 0) + 1
        user.last_transaction_date = now

    if granted:
        logger.info("Granted %s for user %s (%s)", txn.type, txn.user_id, txn.transaction_id)
    return granted


def contact_access_status(user, now: datetime) -> dict:
    if user is None or not user.can_view_contacts or not user.contact_access_expires_at:
        return {
            "canViewContacts": False,
            "contactAccessExpiresAt": None,
            "daysRemaining": 0,
            "needsRenewal": user is not None,
        }

    expires_at = user.contact_access_expires_at
    days_remaining = math.ceil((expires_at - now).total_seconds() / 86400)

    if days_remaining <= 0:
        return {
            "canViewContacts": False,
            "contactAccessExpiresAt": expires_at.isoformat() + "Z",
            "daysRemaining": 0,
            "needsRenewal": True,
        }

    return {
        "canViewContacts": True,
        "contactAccessExpiresAt": expires_at.isoformat() + "Z",
        "daysRemaining": days_remaining,
        "needsRenewal": days_remaining <= RENEWAL_WARNING_DAYS,
    }
