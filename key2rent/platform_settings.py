"""
Platform-wide payment settings.

A single ``platform_settings`` row (id ``"config"``) holds the feature
toggles and prices admins manage, plus the revenue and paid-user counters
that successful payments roll up into. Everything is disabled by default,
so a fresh install runs in FREE mode.
"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from key2rent.errors import NotFoundError, ValidationError
from key2rent.models import PlatformSettings, utcnow

logger = logging.getLogger(__name__)

SETTINGS_ID = "config"
MAX_PRICE = 150000

DEFAULTS = {
    "contact_payment_enabled": False,
    "contact_payment_amount": 100,
    "featured_listings_enabled": False,
    "featured_listing_price": 500,
    "boosted_vacancy_enabled": False,
    "boosted_vacancy_price": 300,
    "total_revenue": 0,
    "paid_users": 0,
    "updated_by": "system",
}

# feature -> (toggle column, price column)
FEATURES = {
    "contact": ("contact_payment_enabled", "contact_payment_amount"),
    "featured": ("featured_listings_enabled", "featured_listing_price"),
    "boosted": ("boosted_vacancy_enabled", "boosted_vacancy_price"),
}


def get_settings(db: Session) -> PlatformSettings:
    """Return the settings row, staging a default one on the session if missing."""
    settings = db.get(PlatformSettings, SETTINGS_ID)
    if settings is None:
        settings = PlatformSettings(id=SETTINGS_ID, last_updated=utcnow(), **DEFAULTS)
        db.add(settings)
    return settings


def _columns(feature: str):
    try:
        return FEATURES[feature]
    except KeyError:
        raise NotFoundError(f"Unknown payment feature: {feature}")


def update_feature_toggle(db: Session, feature: str, enabled: bool, updated_by: str, now: datetime = None):
    toggle, _ = _columns(feature)
    settings = get_settings(db)
    setattr(settings, toggle, bool(enabled))
    settings.last_updated = now or utcnow()
    settings.updated_by = updated_by
    db.commit()
    logger.info("%s %s payments (by %s)", "Enabled" if enabled else "Disabled", feature, updated_by)
    return settings


def update_feature_price(db: Session, feature: str, amount, updated_by: str, now: datetime = None):
    _, price = _columns(feature)
    if isinstance(amount, bool) or not isinstance(amount, int) or not 1 <= amount <= MAX_PRICE:
        raise ValidationError("Invalid price. Must be a whole number between 1 and 150,000 KES")

    settings = get_settings(db)
    setattr(settings, price, amount)
    settings.last_updated = now or utcnow()
    settings.updated_by = updated_by
    db.commit()
    logger.info("Set %s price to KES %s (by %s)", feature, amount, updated_by)
    return settings


def is_paid_mode(settings: PlatformSettings) -> bool:
    return bool(
        settings.contact_payment_enabled
        or settings.featured_listings_enabled
        or settings.boosted_vacancy_enabled
    )


def to_dict(settings: PlatformSettings) -> dict:
    return {
        "contactPaymentEnabled": settings.contact_payment_enabled,
        "contactPaymentAmount": settings.contact_payment_amount,
        "featuredListingsEnabled": settings.featured_listings_enabled,
        "featuredListingPrice": settings.featured_listing_price,
        "boostedVacancyEnabled": settings.boosted_vacancy_enabled,
        "boostedVacancyPrice": settings.boosted_vacancy_price,
        "totalRevenue": settings.total_revenue,
        "paidUsers": settings.paid_users,
        "lastUpdated": settings.last_updated.isoformat() if settings.last_updated else None,
        "updatedBy": settings.updated_by,
        "mode": "PAID" if is_paid_mode(settings) else "FREE",
    }
