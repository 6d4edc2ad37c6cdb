import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from key2rent import transactions
from key2rent.audit import log_payment_attempt
from key2rent.errors import GatewayError
from key2rent.mpesa_service import MpesaClient

logger = logging.getLogger(__name__)


def reconcile_pending(db: Session, client: MpesaClient, older_than_minutes: int) -> dict:
    """
    Settle PENDING transactions whose callback never arrived by asking the
    gateway for their status. Transactions the gateway still reports as
    processing, or that cannot be queried, stay PENDING for the next run.
    """
    counts = {"checked": 0, "succeeded": 0, "failed": 0, "pending": 0}

    for txn in transactions.list_stale_pending(db, timedelta(minutes=older_than_minutes)):
        counts["checked"] += 1
        try:
            result = client.query_status(txn.checkout_request_id)
        except GatewayError as e:
            logger.warning("Status query for %s failed: %s", txn.transaction_id, e.message)
            counts["pending"] += 1
            continue

        if not result["success"]:
            counts["pending"] += 1
            continue

        success = result["result_code"] == 0
        if transactions.complete(db, txn, success=success, status_message=result.get("result_desc")):
            counts["succeeded" if success else "failed"] += 1
            log_payment_attempt(db, txn.user_id, txn.amount, success, txn.checkout_request_id,
                                details="Settled by reconciliation")

    logger.info("Reconciliation finished: %s", counts)
    return counts
