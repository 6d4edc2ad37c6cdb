import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from key2rent import transactions
from key2rent.database import get_db
from key2rent.errors import GatewayError, NotFoundError, RateLimitError, ValidationError
from key2rent.grants import contact_access_status
from key2rent.models import TRANSACTION_TYPES, User, utcnow
from key2rent.mpesa_service import get_mpesa_client, whole_shillings
from key2rent.phone import format_phone_number
from key2rent.rate_limit import STK_PUSH_LIMIT, get_rate_limiter
from key2rent.schemas import StkPushRequest

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_AMOUNT = 150000


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else "unknown")


@router.post("/api/mpesa/stk-push")
def stk_push(
    body: StkPushRequest,
    request: Request,
    db: Session = Depends(get_db),
    limiter=Depends(get_rate_limiter),
    mpesa=Depends(get_mpesa_client),
):
    if not body.phone_number or not body.amount or not body.type or not body.user_id:
        raise ValidationError("Missing required fields: phoneNumber, amount, type, userId")

    if body.type not in TRANSACTION_TYPES:
        raise ValidationError("Invalid transaction type")

    if not limiter.allow(f"stk-push:{body.user_id}", *STK_PUSH_LIMIT):
        raise RateLimitError("Too many payment requests. Please try again later.")

    amount = whole_shillings(body.amount) if 0 < body.amount <= MAX_AMOUNT else 0
    if amount < 1:
        raise ValidationError("Invalid amount. Must be between 1 and 150,000 KES")

    phone_number = format_phone_number(body.phone_number)

    transaction_id = transactions.generate_transaction_id()
    result = mpesa.initiate_push(
        phone_number=phone_number,
        amount=amount,
        account_reference=transactions.account_reference(body.type),
        transaction_desc=transactions.DESCRIPTIONS[body.type],
    )

    if not result["success"]:
        raise GatewayError(
            result.get("error") or "Failed to initiate payment",
            code=result.get("response_code"),
        )

    txn = transactions.create_pending(
        db,
        transaction_id=transaction_id,
        user_id=body.user_id,
        user_email=body.user_email,
        user_name=body.user_name,
        type=body.type,
        amount=amount,
        phone_number=phone_number,
        listing_id=body.listing_id,
        checkout_request_id=result["checkout_request_id"],
        merchant_request_id=result["merchant_request_id"],
        status_message=result.get("customer_message"),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent") or "unknown",
    )
    logger.info("STK push %s sent for user %s (%s)", txn.transaction_id, txn.user_id, txn.checkout_request_id)

    return {
        "success": True,
        "transactionId": txn.transaction_id,
        "checkoutRequestID": txn.checkout_request_id,
        "message": result.get("customer_message"),
        "documentId": txn.id,
    }


@router.get("/api/mpesa/transactions/{document_id}")
def get_transaction(document_id: str, db: Session = Depends(get_db)):
    txn = transactions.get(db, document_id)
    if txn is None:
        raise NotFoundError("Transaction not found")
    return txn.to_dict()


@router.get("/api/users/{user_id}/transactions")
def user_transactions(user_id: str, db: Session = Depends(get_db)):
    return [txn.to_dict() for txn in transactions.list_for_user(db, user_id)]


@router.get("/api/users/{user_id}/contact-access")
def contact_access(user_id: str, db: Session = Depends(get_db)):
    return contact_access_status(db.get(User, user_id), utcnow())
