from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from key2rent import config, platform_settings, transactions
from key2rent.auth import require_admin
from key2rent.database import get_db
from key2rent.models import FAILED, PENDING, SUCCESS, utcnow
from key2rent.mpesa_service import get_mpesa_client
from key2rent.reconcile import reconcile_pending
from key2rent.schemas import FeaturePriceRequest, FeatureToggleRequest

router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


def payment_stats(txns, now: datetime) -> dict:
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week_start = now - timedelta(days=7)
    month_start = today_start.replace(day=1)

    stats = {
        "totalRevenue": 0,
        "totalTransactions": len(txns),
        "successfulPayments": 0,
        "failedPayments": 0,
        "pendingPayments": 0,
        "totalUsers": len({txn.user_id for txn in txns}),
        "todayRevenue": 0,
        "weekRevenue": 0,
        "monthRevenue": 0,
    }
    for txn in txns:
        if txn.status == SUCCESS:
            stats["totalRevenue"] += txn.amount
            stats["successfulPayments"] += 1
            if txn.created_at >= today_start:
                stats["todayRevenue"] += txn.amount
            if txn.created_at >= week_start:
                stats["weekRevenue"] += txn.amount
            if txn.created_at >= month_start:
                stats["monthRevenue"] += txn.amount
        elif txn.status == FAILED:
            stats["failedPayments"] += 1
        elif txn.status == PENDING:
            stats["pendingPayments"] += 1
    return stats


@router.get("/payments")
def admin_payments(status: Optional[str] = None, db: Session = Depends(get_db)):
    recent = transactions.list_recent(db)
    shown = transactions.list_recent(db, status=status) if status else recent
    return {
        "stats": payment_stats(recent, utcnow()),
        "transactions": [txn.to_dict() for txn in shown],
    }


@router.post("/reconcile")
def admin_reconcile(db: Session = Depends(get_db), mpesa=Depends(get_mpesa_client)):
    return reconcile_pending(db, mpesa, config.RECONCILE_AFTER_MINUTES)


@router.get("/settings")
def admin_settings(db: Session = Depends(get_db)):
    settings = platform_settings.get_settings(db)
    db.commit()
    return platform_settings.to_dict(settings)


@router.put("/settings/features/{feature}")
def admin_toggle_feature(
    feature: str,
    body: FeatureToggleRequest,
    db: Session = Depends(get_db),
    claims: dict = Depends(require_admin),
):
    settings = platform_settings.update_feature_toggle(db, feature, body.enabled, claims.get("sub"))
    return platform_settings.to_dict(settings)


@router.put("/settings/prices/{feature}")
def admin_set_price(
    feature: str,
    body: FeaturePriceRequest,
    db: Session = Depends(get_db),
    claims: dict = Depends(require_admin),
):
    settings = platform_settings.update_feature_price(db, feature, body.amount, claims.get("sub"))
    return platform_settings.to_dict(settings)
