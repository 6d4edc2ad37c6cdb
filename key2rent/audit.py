import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from key2rent.models import AuditLog, MpesaCallback

logger = logging.getLogger(__name__)


def log_callback(db: Session, payload) -> None:
    """Keep the raw webhook body. Failures are logged and ignored."""
    try:
        db.add(MpesaCallback(data=payload))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to log callback: %s", e)


def log_payment_attempt(
    db: Session,
    user_id: str,
    amount: int,
    success: bool,
    reference: str,
    details: str = None,
) -> None:
    try:
        db.add(AuditLog(
            user_id=user_id,
            action="payment_success" if success else "payment_failure",
            amount=amount,
            success=success,
            reference=reference,
            details=details,
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to write payment audit entry for %s: %s", reference, e)
