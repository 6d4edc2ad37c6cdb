import json
import logging

import pydantic
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from key2rent import transactions
from key2rent.audit import log_callback, log_payment_attempt
from key2rent.database import get_db
from key2rent.errors import Key2RentError, MetadataError, NotFoundError
from key2rent.rate_limit import CALLBACK_LIMIT, get_rate_limiter
from key2rent.routes import client_ip
from key2rent.schemas import StkCallbackPayload

logger = logging.getLogger(__name__)

router = APIRouter()

ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


def process_callback(db: Session, payload) -> None:
    try:
        stk_callback = StkCallbackPayload.model_validate(payload).body.stk_callback
    except pydantic.ValidationError as e:
        logger.warning("Invalid callback format: %s", e)
        return

    logger.info(
        "M-Pesa callback: CheckoutRequestID=%s ResultCode=%s ResultDesc=%s",
        stk_callback.checkout_request_id,
        stk_callback.result_code,
        stk_callback.result_desc,
    )

    txn = transactions.find_by_checkout_id(db, stk_callback.checkout_request_id)
    if txn is None:
        raise NotFoundError(f"Transaction not found for CheckoutRequestID {stk_callback.checkout_request_id}")

    receipt_number = None
    if stk_callback.is_success:
        try:
            receipt_number = stk_callback.receipt_number()
        except MetadataError as e:
            logger.error("Successful callback %s without receipt: %s", stk_callback.checkout_request_id, e.message)

    changed = transactions.complete(
        db,
        txn,
        success=stk_callback.is_success,
        status_message=stk_callback.result_desc,
        receipt_number=receipt_number,
    )
    if not changed:
        return

    if stk_callback.is_success:
        log_payment_attempt(db, txn.user_id, txn.amount, True, stk_callback.checkout_request_id,
                            details=f"Receipt {receipt_number}")
    else:
        log_payment_attempt(db, txn.user_id, txn.amount, False, stk_callback.checkout_request_id,
                            details=f"Payment failed: {stk_callback.result_desc}")


async def raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/api/mpesa/callback")
def mpesa_callback(
    request: Request,
    body: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
    limiter=Depends(get_rate_limiter),
):
    # M-Pesa retries anything that is not a 200 "Accepted", so nothing escapes
    try:
        ip = client_ip(request)
        if not limiter.allow(f"mpesa-callback:{ip}", *CALLBACK_LIMIT):
            logger.warning("Rate limit exceeded for M-Pesa callback from IP: %s", ip)
            return ACCEPTED

        payload = json.loads(body)
        log_callback(db, payload)
        process_callback(db, payload)
    except NotFoundError as e:
        logger.error(e.message)
    except Key2RentError as e:
        logger.error("Callback handler error: %s", e.message)
    except Exception:
        db.rollback()
        logger.exception("Callback handler error")

    return ACCEPTED


@router.get("/api/mpesa/callback")
def callback_health():
    return {"message": "M-Pesa callback endpoint active"}
