import logging
import math
import os
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import without_object_id
from errors import InsufficientFunds, ValidationFailed
from models import (
    ACCOUNT_MODEL_STUDENT,
    USER_TYPE_BY_ACCOUNT_MODEL,
    resolve_account_model,
)

logger = logging.getLogger(__name__)

DEFAULT_COIN_BALANCE = int(os.environ.get("DEFAULT_COIN_BALANCE", "100"))
REQUEST_CREATION_COST = int(os.environ.get("REQUEST_CREATION_COST", "10"))
FULFILLMENT_REWARD = int(os.environ.get("FULFILLMENT_REWARD", "10"))
LOW_BALANCE_THRESHOLD = int(os.environ.get("LOW_BALANCE_THRESHOLD", "50"))
CRITICAL_BALANCE_THRESHOLD = int(os.environ.get("CRITICAL_BALANCE_THRESHOLD", "10"))

# Recent credit references kept on the account; older ones are covered by
# the applied ledger entry.
RECENT_REFERENCE_LIMIT = int(os.environ.get("RECENT_REFERENCE_LIMIT", "100"))
CREDIT_PENDING = "pending"
CREDIT_APPLIED = "applied"

_ACCOUNT_PROJECTION = {"recent_references": 0}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationFailed("Amount must be a positive whole number of coins")
    return amount


def _account_filter(user_id: str, account_model: str) -> Dict[str, Any]:
    if not user_id:
        raise ValidationFailed("User ID is required")
    return {"user_id": str(user_id), "user_model": account_model}


async def _ensure_account(db, user_id: str, account_model: str) -> Dict[str, Any]:
    """Return the coin account, creating it with the default balance if absent."""
    account_filter = _account_filter(user_id, account_model)
    now_iso = _utc_now_iso()
    try:
        account = await db.coins.find_one_and_update(
            account_filter,
            {
                "$setOnInsert": {
                    "id": str(uuid.uuid4()),
                    "coins": DEFAULT_COIN_BALANCE,
                    "recent_references": [],
                    "created_at": now_iso,
                    "last_updated": now_iso,
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            projection=_ACCOUNT_PROJECTION,
        )
    except DuplicateKeyError:
        # A concurrent first access won the insert.
        account = await db.coins.find_one(account_filter, _ACCOUNT_PROJECTION)
    return without_object_id(account)


async def _record_transaction(
    db,
    *,
    user_id: str,
    account_model: str,
    amount: int,
    reason: str,
    reference: Optional[str],
    balance_after: int,
) -> None:
    entry = {
        "id": str(uuid.uuid4()),
        "user_id": str(user_id),
        "user_model": account_model,
        "amount": amount,
        "direction": "credit" if amount >= 0 else "debit",
        "reason": reason,
        "reference": reference,
        "balance_after": balance_after,
        "created_at": _utc_now_iso(),
    }
    try:
        await db.coin_transactions.insert_one(entry)
    except Exception as exc:
        logger.error(
            "coin_transaction_log_failed user_id=%s model=%s amount=%s reference=%s error=%s",
            user_id,
            account_model,
            amount,
            reference,
            exc,
        )


async def _current_coins(db, account_filter: Dict[str, Any]) -> int:
    current = await db.coins.find_one(account_filter, {"_id": 0, "coins": 1})
    return int((current or {}).get("coins", 0))


async def get_balance(db, user_id: str, user_type: str) -> Dict[str, Any]:
    account_model = resolve_account_model(user_type)
    account = await _ensure_account(db, user_id, account_model)
    return {
        "user_id": str(user_id),
        "user_type": USER_TYPE_BY_ACCOUNT_MODEL[account_model],
        "coins": int(account["coins"]),
        "last_updated": account.get("last_updated"),
    }


async def deduct(
    db,
    user_id: str,
    user_type: str,
    amount: int,
    reason: str = "manual_deduct",
    reference: Optional[str] = None,
) -> Dict[str, Any]:
    account_model = resolve_account_model(user_type)
    amount = _validate_amount(amount)
    account_filter = _account_filter(user_id, account_model)
    await _ensure_account(db, user_id, account_model)

    updated = without_object_id(
        await db.coins.find_one_and_update(
            {**account_filter, "coins": {"$gte": amount}},
            {"$inc": {"coins": -amount}, "$set": {"last_updated": _utc_now_iso()}},
            return_document=ReturnDocument.AFTER,
            projection=_ACCOUNT_PROJECTION,
        )
    )
    if not updated:
        available = await _current_coins(db, account_filter)
        logger.info(
            "coin_deduct_insufficient user_id=%s model=%s available=%s required=%s",
            user_id,
            account_model,
            available,
            amount,
        )
        raise InsufficientFunds(available=available, required=amount)

    remaining = int(updated["coins"])
    await _record_transaction(
        db,
        user_id=user_id,
        account_model=account_model,
        amount=-amount,
        reason=reason,
        reference=reference,
        balance_after=remaining,
    )
    logger.info(
        "coin_deducted user_id=%s model=%s amount=%s remaining=%s reason=%s",
        user_id,
        account_model,
        amount,
        remaining,
        reason,
    )
    return {
        "user_id": str(user_id),
        "user_type": USER_TYPE_BY_ACCOUNT_MODEL[account_model],
        "coins_deducted": amount,
        "remaining_coins": remaining,
        "message": f"Successfully deducted {amount} coins. Remaining balance: {remaining} coins.",
    }


async def add(
    db,
    user_id: str,
    user_type: str,
    amount: int,
    reason: str = "manual_add",
    reference: Optional[str] = None,
) -> Dict[str, Any]:
    account_model = resolve_account_model(user_type)
    amount = _validate_amount(amount)
    account_filter = _account_filter(user_id, account_model)
    await _ensure_account(db, user_id, account_model)

    updated = without_object_id(
        await db.coins.find_one_and_update(
            account_filter,
            {"$inc": {"coins": amount}, "$set": {"last_updated": _utc_now_iso()}},
            return_document=ReturnDocument.AFTER,
            projection=_ACCOUNT_PROJECTION,
        )
    )
    total = int(updated["coins"])
    await _record_transaction(
        db,
        user_id=user_id,
        account_model=account_model,
        amount=amount,
        reason=reason,
        reference=reference,
        balance_after=total,
    )
    logger.info(
        "coin_added user_id=%s model=%s amount=%s total=%s reason=%s",
        user_id,
        account_model,
        amount,
        total,
        reason,
    )
    return {
        "user_id": str(user_id),
        "user_type": USER_TYPE_BY_ACCOUNT_MODEL[account_model],
        "coins_added": amount,
        "total_coins": total,
        "message": f"Successfully added {amount} coins. Total balance: {total} coins.",
    }


async def _claim_credit_entry(
    db,
    *,
    user_id: str,
    account_model: str,
    amount: int,
    reason: str,
    reference: str,
) -> Dict[str, Any]:
    """Ledger entry keyed by ``reference``. The first caller creates it pending."""
    try:
        entry = await db.coin_transactions.find_one_and_update(
            {"reference": reference},
            {
                "$setOnInsert": {
                    "id": str(uuid.uuid4()),
                    "user_id": str(user_id),
                    "user_model": account_model,
                    "amount": amount,
                    "direction": "credit",
                    "reason": reason,
                    "status": CREDIT_PENDING,
                    "balance_after": None,
                    "created_at": _utc_now_iso(),
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        entry = await db.coin_transactions.find_one({"reference": reference})
    return without_object_id(entry)


async def credit_once(
    db,
    user_id: str,
    user_type: str,
    amount: int,
    reference: str,
    reason: str = "reward",
) -> Tuple[bool, int]:
    """Credit ``amount`` unless ``reference`` was already applied to this account.

    Returns ``(applied, balance)``. Safe to call any number of times for the
    same reference, which is what lets reward retries run unattended.

    The ledger entry for ``reference`` is unique and flips from pending to
    applied once the balance moved. While it is pending, the account's short
    ``recent_references`` window stops a second increment, so an attempt that
    crashed between the two writes is finished by the next one without
    crediting twice.
    """
    if not reference:
        raise ValidationFailed("A credit reference is required")
    account_model = resolve_account_model(user_type)
    amount = _validate_amount(amount)
    account_filter = _account_filter(user_id, account_model)
    await _ensure_account(db, user_id, account_model)

    entry = await _claim_credit_entry(
        db,
        user_id=user_id,
        account_model=account_model,
        amount=amount,
        reason=reason,
        reference=reference,
    )
    if entry and entry.get("status") == CREDIT_APPLIED:
        logger.info(
            "coin_credit_already_applied user_id=%s model=%s reference=%s",
            user_id,
            account_model,
            reference,
        )
        return False, await _current_coins(db, account_filter)

    updated = without_object_id(
        await db.coins.find_one_and_update(
            {**account_filter, "recent_references": {"$ne": reference}},
            {
                "$inc": {"coins": amount},
                "$push": {
                    "recent_references": {"$each": [reference], "$slice": -RECENT_REFERENCE_LIMIT}
                },
                "$set": {"last_updated": _utc_now_iso()},
            },
            return_document=ReturnDocument.AFTER,
            projection=_ACCOUNT_PROJECTION,
        )
    )
    applied = updated is not None
    balance = int(updated["coins"]) if applied else await _current_coins(db, account_filter)
    await db.coin_transactions.update_one(
        {"reference": reference, "status": CREDIT_PENDING},
        {"$set": {"status": CREDIT_APPLIED, "balance_after": balance, "applied_at": _utc_now_iso()}},
    )
    logger.info(
        "coin_credit_settled user_id=%s model=%s amount=%s reference=%s applied=%s balance=%s",
        user_id,
        account_model,
        amount,
        reference,
        applied,
        balance,
    )
    return applied, balance


async def check_sufficient(db, user_id: str, user_type: str, required_amount: int) -> Dict[str, Any]:
    account_model = resolve_account_model(user_type)
    required_amount = int(required_amount)
    if required_amount < 0:
        raise ValidationFailed("Required amount cannot be negative")
    account = await _ensure_account(db, user_id, account_model)
    current = int(account["coins"])
    has_enough = current >= required_amount
    return {
        "user_id": str(user_id),
        "user_type": USER_TYPE_BY_ACCOUNT_MODEL[account_model],
        "current_coins": current,
        "required_amount": required_amount,
        "has_enough_coins": has_enough,
        "message": (
            f"You have enough coins ({current} >= {required_amount})"
            if has_enough
            else f"Insufficient coins. You have {current} but need {required_amount}"
        ),
    }


async def get_request_creation_balance(db, user_id: str, user_type: str) -> Dict[str, Any]:
    check = await check_sufficient(db, user_id, user_type, REQUEST_CREATION_COST)
    can_create = check["has_enough_coins"]
    current = check["current_coins"]
    return {
        "user_id": check["user_id"],
        "user_type": check["user_type"],
        "current_coins": current,
        "request_cost": REQUEST_CREATION_COST,
        "can_create_request": can_create,
        "message": (
            f"You can create a request. Cost: {REQUEST_CREATION_COST} coins, Balance: {current} coins"
            if can_create
            else f"Cannot create request. You need {REQUEST_CREATION_COST} coins but have {current} coins"
        ),
    }


async def process_request_creation(
    db,
    user_id: str,
    user_type: str,
    reference: Optional[str] = None,
) -> Dict[str, Any]:
    return await deduct(
        db,
        user_id,
        user_type,
        REQUEST_CREATION_COST,
        reason="request_creation",
        reference=reference,
    )


async def process_request_fulfillment(
    db,
    fulfiller_id: str,
    fulfiller_type: str,
    reference: str,
) -> Tuple[bool, int]:
    return await credit_once(
        db,
        fulfiller_id,
        fulfiller_type,
        FULFILLMENT_REWARD,
        reference=reference,
        reason="request_fulfillment",
    )


async def list_transactions(db, user_id: str, user_type: str, limit: int = 50) -> List[Dict[str, Any]]:
    account_model = resolve_account_model(user_type)
    safe_limit = max(1, min(int(limit), 200))
    return (
        await db.coin_transactions.find(_account_filter(user_id, account_model), {"_id": 0})
        .sort("created_at", -1)
        .to_list(safe_limit)
    )


def _balances_pipeline(search_query: str, user_type: str) -> List[Dict[str, Any]]:
    match: Dict[str, Any] = {}
    if user_type and user_type != "all":
        match["user_model"] = resolve_account_model(user_type)

    pipeline: List[Dict[str, Any]] = [
        {"$match": match},
        {"$lookup": {"from": "students", "localField": "user_id", "foreignField": "id", "as": "student_details"}},
        {"$lookup": {"from": "profiles", "localField": "user_id", "foreignField": "id", "as": "profile_details"}},
        {
            "$addFields": {
                "user_details": {
                    "$cond": {
                        "if": {"$eq": ["$user_model", ACCOUNT_MODEL_STUDENT]},
                        "then": {"$arrayElemAt": ["$student_details", 0]},
                        "else": {"$arrayElemAt": ["$profile_details", 0]},
                    }
                }
            }
        },
    ]
    if search_query:
        pattern = re.escape(search_query.strip())
        pipeline.append(
            {
                "$match": {
                    "$or": [
                        {"user_details.first_name": {"$regex": pattern, "$options": "i"}},
                        {"user_details.last_name": {"$regex": pattern, "$options": "i"}},
                        {"user_details.name": {"$regex": pattern, "$options": "i"}},
                        {"user_details.email": {"$regex": pattern, "$options": "i"}},
                    ]
                }
            }
        )
    pipeline.append(
        {
            "$project": {
                "_id": 0,
                "user_id": 1,
                "user_type": {
                    "$cond": {
                        "if": {"$eq": ["$user_model", ACCOUNT_MODEL_STUDENT]},
                        "then": "student",
                        "else": "expert",
                    }
                },
                "coins": 1,
                "last_updated": 1,
                "user_name": {
                    "$cond": {
                        "if": {"$eq": ["$user_model", ACCOUNT_MODEL_STUDENT]},
                        "then": {
                            "$concat": [
                                {"$ifNull": ["$user_details.first_name", ""]},
                                " ",
                                {"$ifNull": ["$user_details.last_name", ""]},
                            ]
                        },
                        "else": {"$ifNull": ["$user_details.name", ""]},
                    }
                },
                "user_email": "$user_details.email",
            }
        }
    )
    return pipeline


async def list_balances(
    db,
    page: int = 1,
    limit: int = 10,
    search_query: str = "",
    user_type: str = "all",
) -> Dict[str, Any]:
    page = max(1, int(page))
    limit = max(1, min(int(limit), 200))
    pipeline = _balances_pipeline(search_query, user_type)

    count_result = await db.coins.aggregate([*pipeline, {"$count": "total"}]).to_list(1)
    total_count = int(count_result[0]["total"]) if count_result else 0
    balances = await db.coins.aggregate(
        [
            *pipeline,
            {"$sort": {"last_updated": -1}},
            {"$skip": (page - 1) * limit},
            {"$limit": limit},
        ]
    ).to_list(limit)
    return {
        "balances": balances,
        "total_count": total_count,
        "current_page": page,
        "total_pages": math.ceil(total_count / limit) if total_count else 0,
    }


async def get_statistics(db) -> Dict[str, Any]:
    overview = await db.coins.aggregate(
        [
            {
                "$group": {
                    "_id": None,
                    "total_users": {"$sum": 1},
                    "total_coins": {"$sum": "$coins"},
                    "average_coins": {"$avg": "$coins"},
                    "min_coins": {"$min": "$coins"},
                    "max_coins": {"$max": "$coins"},
                }
            }
        ]
    ).to_list(1)
    by_model = await db.coins.aggregate(
        [
            {
                "$group": {
                    "_id": "$user_model",
                    "count": {"$sum": 1},
                    "total_coins": {"$sum": "$coins"},
                    "average_coins": {"$avg": "$coins"},
                }
            }
        ]
    ).to_list(10)
    low_balance_users = await db.coins.count_documents({"coins": {"$lt": LOW_BALANCE_THRESHOLD}})
    critical_balance_users = await db.coins.count_documents({"coins": {"$lt": CRITICAL_BALANCE_THRESHOLD}})

    summary = overview[0] if overview else {
        "total_users": 0,
        "total_coins": 0,
        "average_coins": 0,
        "min_coins": 0,
        "max_coins": 0,
    }
    summary.pop("_id", None)
    return {
        "overview": summary,
        "by_user_type": [
            {
                "user_type": USER_TYPE_BY_ACCOUNT_MODEL.get(row["_id"], row["_id"]),
                "count": row["count"],
                "total_coins": row["total_coins"],
                "average_coins": row["average_coins"],
            }
            for row in by_model
        ],
        "low_balance_users": low_balance_users,
        "critical_balance_users": critical_balance_users,
    }
