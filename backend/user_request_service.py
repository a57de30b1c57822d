import logging
import math
import os
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

import coin_service
import notification_service
import outbox
from database import without_object_id
from errors import Conflict, NotFound, ValidationFailed
from models import (
    DATA_TYPES,
    DOCUMENT_TYPES,
    LAB_NATURES,
    PROFILE_COLLECTION_BY_ACCOUNT_MODEL,
    REQUEST_PRIORITIES,
    REQUEST_STATUSES,
    REQUEST_TYPE_DATA,
    REQUEST_TYPE_DOCUMENT,
    REQUEST_TYPE_LAB,
    REQUEST_TYPES,
    REWARD_CREDITED,
    REWARD_PENDING,
    STATUS_APPROVED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    normalize_user_type,
    resolve_account_model,
)

logger = logging.getLogger(__name__)

CHARGED_REQUEST_TYPES = {
    t.strip()
    for t in os.environ.get("CHARGED_REQUEST_TYPES", REQUEST_TYPE_DOCUMENT).split(",")
    if t.strip()
}
REQUEST_SORT_FIELDS = {"created_at", "updated_at", "priority", "status", "title"}
UPDATABLE_REQUEST_FIELDS = {
    "title",
    "description",
    "priority",
    "lab_details",
    "document_details",
    "data_details",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_request_id() -> str:
    return str(uuid.uuid4())


def reward_reference(request_id: str) -> str:
    return f"fulfillment_reward:{request_id}"


def empty_admin_response() -> Dict[str, Any]:
    return {"responded_by": None, "response_message": None, "response_date": None}


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


async def get_display_profile(db, user_id: Optional[str], user_type: Optional[str]) -> Dict[str, Optional[str]]:
    """Name and email for a student or expert, used in notifications and emails."""
    if not user_id:
        return {"name": None, "email": None}
    try:
        account_model = resolve_account_model(user_type)
    except ValidationFailed:
        return {"name": None, "email": None}
    collection = db[PROFILE_COLLECTION_BY_ACCOUNT_MODEL[account_model]]
    profile = await collection.find_one(
        {"id": user_id},
        {"_id": 0, "first_name": 1, "last_name": 1, "name": 1, "email": 1},
    )
    if not profile:
        return {"name": None, "email": None}
    name = profile.get("name") or " ".join(
        part for part in (profile.get("first_name"), profile.get("last_name")) if part
    )
    return {"name": name or None, "email": profile.get("email")}


def _build_type_details(data: Dict[str, Any]) -> Dict[str, Any]:
    request_type = data.get("type")
    title = _clean(data.get("title"))
    description = _clean(data.get("description"))
    details: Dict[str, Any] = {"lab_details": None, "document_details": None, "data_details": None}

    if request_type == REQUEST_TYPE_LAB:
        nature = _clean(data.get("lab_nature"))
        needs = _clean(data.get("lab_needs"))
        if not nature:
            raise ValidationFailed("Lab nature is required for lab requests")
        if nature not in LAB_NATURES:
            raise ValidationFailed(f"Invalid lab nature: {nature}")
        if not needs:
            raise ValidationFailed("Lab needs description is required for lab requests")
        details["lab_details"] = {
            "nature": nature,
            "needs": needs,
            "additional_info": _clean(data.get("lab_additional_info")),
        }
        title = title or f"{nature} Request"
        description = description or needs

    elif request_type == REQUEST_TYPE_DOCUMENT:
        document_type = _clean(data.get("document_type"))
        if document_type and document_type not in DOCUMENT_TYPES:
            raise ValidationFailed(f"Invalid document type: {document_type}")
        published_date = _clean(data.get("document_published_date"))
        if published_date:
            try:
                published_date = datetime.fromisoformat(published_date.replace("Z", "+00:00")).isoformat()
            except ValueError:
                raise ValidationFailed("Document published date must be an ISO-8601 date")
        doi = _clean(data.get("document_doi"))
        document_title = _clean(data.get("document_title"))
        author = _clean(data.get("document_author"))
        details["document_details"] = {
            "doi": doi,
            "type": document_type,
            "title": document_title,
            "publisher": _clean(data.get("document_publisher")),
            "author": author,
            "published_date": published_date,
        }
        title = title or document_title or "Document Request"
        if not description:
            if doi:
                description = doi
            elif document_type and author:
                description = f"{document_type} by {author}"
            else:
                description = "Document access request"

    elif request_type == REQUEST_TYPE_DATA:
        data_type = _clean(data.get("data_type"))
        data_title = _clean(data.get("data_title"))
        data_description = _clean(data.get("data_description"))
        if not data_type:
            raise ValidationFailed("Data type is required for data requests")
        if data_type not in DATA_TYPES:
            raise ValidationFailed(f"Invalid data type: {data_type}")
        if not data_title:
            raise ValidationFailed("Data title is required for data requests")
        if not data_description:
            raise ValidationFailed("Data description is required for data requests")
        details["data_details"] = {"type": data_type, "title": data_title, "description": data_description}
        title = title or data_title
        description = description or data_description

    details["title"] = title
    details["description"] = description
    return details


async def create_request(db, requester_id: str, requester_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    request_type = payload.get("type")
    if request_type not in REQUEST_TYPES:
        raise ValidationFailed("Request type must be one of: Lab, Document, Data")
    priority = _clean(payload.get("priority")) or "Medium"
    if priority not in REQUEST_PRIORITIES:
        raise ValidationFailed("Priority must be one of: Low, Medium, High")
    user_type = normalize_user_type(requester_type)
    details = _build_type_details(payload)

    now_iso = _utc_now_iso()
    request_id = _new_request_id()
    doc = {
        "id": request_id,
        "requester": {"user_id": str(requester_id), "user_type": user_type},
        "type": request_type,
        "status": STATUS_PENDING,
        "priority": priority,
        **details,
        "admin_response": empty_admin_response(),
        "fulfilled_by": None,
        "fulfillment_id": None,
        "attachments": [],
        "is_fulfilled": False,
        "fulfilled_at": None,
        "reward": None,
        "creation_charge": 0,
        "is_deleted": False,
        "deleted_at": None,
        "created_at": now_iso,
        "updated_at": now_iso,
    }

    charged = request_type in CHARGED_REQUEST_TYPES
    if charged:
        charge = await coin_service.process_request_creation(
            db,
            requester_id,
            user_type,
            reference=f"request_creation:{request_id}",
        )
        doc["creation_charge"] = charge["coins_deducted"]

    try:
        await db.user_requests.insert_one(doc)
    except Exception:
        if charged:
            await coin_service.credit_once(
                db,
                requester_id,
                user_type,
                doc["creation_charge"],
                reference=f"request_creation_refund:{request_id}",
                reason="request_creation_refund",
            )
        raise
    doc.pop("_id", None)
    logger.info(
        "user_request_created request_id=%s requester_id=%s type=%s charge=%s",
        request_id,
        requester_id,
        request_type,
        doc["creation_charge"],
    )
    return doc


def _search_clause(search: str) -> Dict[str, Any]:
    pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
    return {
        "$or": [
            {"title": pattern},
            {"description": pattern},
            {"lab_details.nature": pattern},
            {"document_details.title": pattern},
            {"document_details.author": pattern},
            {"data_details.title": pattern},
        ]
    }


async def _paginate(db, query: Dict[str, Any], sort: List, page: int, limit: int) -> Dict[str, Any]:
    page = max(1, int(page))
    limit = max(1, min(int(limit), 100))
    docs = (
        await db.user_requests.find(query, {"_id": 0})
        .sort(sort)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(limit)
    )
    total = await db.user_requests.count_documents(query)
    return {
        "data": docs,
        "total_count": total,
        "current_page": page,
        "total_pages": math.ceil(total / limit) if total else 0,
        "has_next_page": page * limit < total,
        "has_prev_page": page > 1,
    }


async def list_requests(
    db,
    requester_id: str,
    page: int = 1,
    limit: int = 10,
    search: Optional[str] = None,
    type: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> Dict[str, Any]:
    if not requester_id:
        raise ValidationFailed("Requester ID is required for filtering user requests")
    query: Dict[str, Any] = {"is_deleted": False, "requester.user_id": requester_id}
    if type:
        if type not in REQUEST_TYPES:
            raise ValidationFailed(f"Invalid request type: {type}")
        query["type"] = type
    if status:
        if status not in REQUEST_STATUSES:
            raise ValidationFailed(f"Invalid request status: {status}")
        query["status"] = status
    if priority:
        if priority not in REQUEST_PRIORITIES:
            raise ValidationFailed(f"Invalid request priority: {priority}")
        query["priority"] = priority
    if search and search.strip():
        query.update(_search_clause(search))
    if sort_by not in REQUEST_SORT_FIELDS:
        raise ValidationFailed(f"Cannot sort by {sort_by}")
    direction = -1 if sort_order == "desc" else 1
    return await _paginate(db, query, [(sort_by, direction)], page, limit)


async def search_requests(db, requester_id: str, query: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    if not query or not query.strip():
        raise ValidationFailed("Search query is required")
    return await list_requests(db, requester_id, page=page, limit=limit, search=query)


async def list_open_requests(
    db,
    viewer_id: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    type: Optional[str] = None,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    """Unfulfilled requests that other users can pick up."""
    query: Dict[str, Any] = {
        "is_deleted": False,
        "is_fulfilled": False,
        "status": {"$in": [STATUS_PENDING, STATUS_IN_PROGRESS]},
    }
    if viewer_id:
        query["requester.user_id"] = {"$ne": viewer_id}
    if type:
        if type not in REQUEST_TYPES:
            raise ValidationFailed(f"Invalid request type: {type}")
        query["type"] = type
    if search and search.strip():
        query.update(_search_clause(search))
    return await _paginate(db, query, [("created_at", -1)], page, limit)


async def get_request(db, request_id: str, requester_id: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {"id": request_id, "is_deleted": False}
    if requester_id:
        query["requester.user_id"] = requester_id
    doc = await db.user_requests.find_one(query, {"_id": 0})
    if not doc:
        raise NotFound("User request not found")
    return doc


async def update_request(db, request_id: str, requester_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    changes = {k: v for k, v in updates.items() if k in UPDATABLE_REQUEST_FIELDS and v is not None}
    if not changes:
        raise ValidationFailed("No updatable fields supplied")
    if "priority" in changes and changes["priority"] not in REQUEST_PRIORITIES:
        raise ValidationFailed("Priority must be one of: Low, Medium, High")
    changes["updated_at"] = _utc_now_iso()

    updated = await db.user_requests.find_one_and_update(
        {"id": request_id, "requester.user_id": requester_id, "is_deleted": False, "is_fulfilled": False},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("User request not found")
    return without_object_id(updated)


async def delete_request(db, request_id: str, requester_id: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {"id": request_id, "is_deleted": False}
    if requester_id:
        query["requester.user_id"] = requester_id
    now_iso = _utc_now_iso()
    deleted = await db.user_requests.find_one_and_update(
        query,
        {"$set": {"is_deleted": True, "deleted_at": now_iso, "updated_at": now_iso}},
        return_document=ReturnDocument.AFTER,
    )
    if not deleted:
        raise NotFound("User request not found")
    logger.info("user_request_deleted request_id=%s", request_id)
    return without_object_id(deleted)


async def update_request_status(
    db,
    request_id: str,
    status: str,
    responded_by: str,
    response_message: Optional[str] = None,
) -> Dict[str, Any]:
    """Admin status change. A confirmed request can only stay Approved."""
    if status not in REQUEST_STATUSES:
        raise ValidationFailed(f"Invalid request status: {status}")
    query: Dict[str, Any] = {"id": request_id, "is_deleted": False}
    if status != STATUS_APPROVED:
        query["is_fulfilled"] = False
    now_iso = _utc_now_iso()
    updated = await db.user_requests.find_one_and_update(
        query,
        {
            "$set": {
                "status": status,
                "admin_response.responded_by": responded_by,
                "admin_response.response_message": response_message,
                "admin_response.response_date": now_iso,
                "updated_at": now_iso,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        if await db.user_requests.count_documents({"id": request_id, "is_deleted": False}):
            raise Conflict("A confirmed request cannot leave the Approved status")
        raise NotFound("User request not found")
    logger.info("user_request_status_updated request_id=%s status=%s by=%s", request_id, status, responded_by)
    return without_object_id(updated)


async def get_request_statistics(db, requester_id: Optional[str] = None) -> Dict[str, Any]:
    match: Dict[str, Any] = {"is_deleted": False}
    if requester_id:
        match["requester.user_id"] = requester_id

    def _count_status(status: str) -> Dict[str, Any]:
        return {"$sum": {"$cond": [{"$eq": ["$status", status]}, 1, 0]}}

    totals = await db.user_requests.aggregate(
        [
            {"$match": match},
            {
                "$group": {
                    "_id": None,
                    "total_requests": {"$sum": 1},
                    "pending_requests": _count_status(STATUS_PENDING),
                    "approved_requests": _count_status(STATUS_APPROVED),
                    "rejected_requests": _count_status("Rejected"),
                    "in_progress_requests": _count_status(STATUS_IN_PROGRESS),
                }
            },
        ]
    ).to_list(1)
    by_type = await db.user_requests.aggregate(
        [{"$match": match}, {"$group": {"_id": "$type", "count": {"$sum": 1}}}]
    ).to_list(10)

    stats = totals[0] if totals else {
        "total_requests": 0,
        "pending_requests": 0,
        "approved_requests": 0,
        "rejected_requests": 0,
        "in_progress_requests": 0,
    }
    stats.pop("_id", None)
    stats["type_breakdown"] = {row["_id"]: row["count"] for row in by_type}
    return stats


async def apply_pending_reward(db, request_id: str) -> str:
    """Credit the reward recorded on a confirmed request, if still pending.

    Raises whatever the coin ledger raises so callers can retry.
    """
    request_doc = await db.user_requests.find_one(
        {"id": request_id, "reward.status": REWARD_PENDING},
        {"_id": 0, "id": 1, "reward": 1},
    )
    if not request_doc:
        return "not_pending"
    reward = request_doc["reward"]
    fulfiller = reward["fulfiller"]
    try:
        applied, balance = await coin_service.credit_once(
            db,
            fulfiller["user_id"],
            fulfiller["user_type"],
            int(reward["amount"]),
            reference=reward["reference"],
            reason="request_fulfillment",
        )
    except Exception as exc:
        await db.user_requests.update_one(
            {"id": request_id, "reward.status": REWARD_PENDING},
            {
                "$inc": {"reward.attempts": 1},
                "$set": {"reward.last_error": str(exc), "reward.last_attempt_at": _utc_now_iso()},
            },
        )
        raise

    now_iso = _utc_now_iso()
    await db.user_requests.update_one(
        {"id": request_id, "reward.status": REWARD_PENDING},
        {
            "$inc": {"reward.attempts": 1},
            "$set": {
                "reward.status": REWARD_CREDITED,
                "reward.credited_at": now_iso,
                "reward.last_attempt_at": now_iso,
                "reward.last_error": None,
                "reward.balance_after": balance,
            },
        },
    )
    return "credited" if applied else "already_credited"


async def confirm_fulfillment(db, request_id: str, requester_id: str) -> Dict[str, Any]:
    guard: Dict[str, Any] = {
        "id": request_id,
        "requester.user_id": requester_id,
        "status": STATUS_APPROVED,
        "is_fulfilled": False,
        "is_deleted": False,
    }
    current = await db.user_requests.find_one(guard, {"_id": 0})
    if not current or not current.get("fulfilled_by"):
        raise NotFound("User request not found or already confirmed")

    fulfiller = current["fulfilled_by"]
    now_iso = _utc_now_iso()
    changes: Dict[str, Any] = {"is_fulfilled": True, "fulfilled_at": now_iso, "updated_at": now_iso}
    update_filter = {
        **guard,
        "fulfilled_by.user_id": fulfiller["user_id"],
        "fulfillment_id": current.get("fulfillment_id"),
    }
    # One reward per request, even across reject and re-confirm cycles.
    grant_reward = not current.get("reward")
    if grant_reward:
        update_filter["reward"] = None
        changes["reward"] = {
            "status": REWARD_PENDING,
            "reference": reward_reference(request_id),
            "amount": coin_service.FULFILLMENT_REWARD,
            "fulfiller": fulfiller,
            "attempts": 0,
            "last_error": None,
            "created_at": now_iso,
        }

    updated = await db.user_requests.find_one_and_update(
        update_filter,
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    updated = without_object_id(updated)
    if not updated:
        raise NotFound("User request not found or already confirmed")
    logger.info(
        "fulfillment_confirmed request_id=%s requester_id=%s fulfiller_id=%s reward=%s",
        request_id,
        requester_id,
        fulfiller["user_id"],
        grant_reward,
    )

    reward_status = (updated.get("reward") or {}).get("status")
    if grant_reward:
        try:
            outcome = await apply_pending_reward(db, request_id)
            if outcome in {"credited", "already_credited"}:
                reward_status = REWARD_CREDITED
        except Exception as exc:
            logger.error(
                "fulfillment_reward_failed request_id=%s fulfiller_id=%s error=%s",
                request_id,
                fulfiller["user_id"],
                exc,
            )
            outbox.queue_reward_retry(request_id)
        if updated.get("reward"):
            updated["reward"]["status"] = reward_status

    requester = await get_display_profile(db, requester_id, updated["requester"].get("user_type"))
    await outbox.queue_notification(
        db,
        notification_service.build_fulfillment_approved_notification(
            fulfiller_id=fulfiller["user_id"],
            fulfiller_model=resolve_account_model(fulfiller["user_type"]),
            requester_name=requester["name"] or "The requester",
            request_title=updated.get("title"),
            user_request_id=request_id,
            reward=coin_service.FULFILLMENT_REWARD if grant_reward else 0,
        ),
    )
    return {"request": updated, "reward_status": reward_status, "reward_granted": grant_reward}


async def reject_fulfillment(db, request_id: str, requester_id: str) -> Dict[str, Any]:
    now_iso = _utc_now_iso()
    before = await db.user_requests.find_one_and_update(
        {
            "id": request_id,
            "requester.user_id": requester_id,
            "status": STATUS_APPROVED,
            "is_deleted": False,
        },
        {
            "$set": {
                "status": STATUS_PENDING,
                "is_fulfilled": False,
                "fulfilled_at": None,
                "attachments": [],
                "fulfilled_by": None,
                "fulfillment_id": None,
                "admin_response": empty_admin_response(),
                "updated_at": now_iso,
            }
        },
        return_document=ReturnDocument.BEFORE,
    )
    before = without_object_id(before)
    if not before:
        raise NotFound("User request not found or has no fulfillment to reject")

    retired = await db.paper_requests.update_many(
        {"user_request_id": request_id, "is_deleted": False},
        {"$set": {"request_status": "rejected", "is_deleted": True, "updated_at": now_iso}},
    )
    fulfiller = before.get("fulfilled_by")
    logger.info(
        "fulfillment_rejected request_id=%s requester_id=%s fulfiller_id=%s retired=%s",
        request_id,
        requester_id,
        (fulfiller or {}).get("user_id"),
        retired.modified_count,
    )

    if fulfiller:
        requester = await get_display_profile(db, requester_id, before["requester"].get("user_type"))
        await outbox.queue_notification(
            db,
            notification_service.build_fulfillment_rejected_notification(
                fulfiller_id=fulfiller["user_id"],
                fulfiller_model=resolve_account_model(fulfiller["user_type"]),
                requester_name=requester["name"] or "The requester",
                request_title=before.get("title"),
                user_request_id=request_id,
            ),
        )
    return await get_request(db, request_id, requester_id)


async def update_fulfillment_status(db, request_id: str, requester_id: str, is_fulfilled: bool) -> Dict[str, Any]:
    if is_fulfilled:
        result = await confirm_fulfillment(db, request_id, requester_id)
        return {
            "request": result["request"],
            "reward_status": result["reward_status"],
            "message": "Fulfillment confirmed",
        }
    request_doc = await reject_fulfillment(db, request_id, requester_id)
    return {"request": request_doc, "reward_status": None, "message": "Fulfillment rejected"}


async def reconcile_pending_rewards(db, grace_seconds: int = 300, batch_size: int = 200) -> Dict[str, int]:
    """Re-apply rewards still pending after ``grace_seconds``.

    Covers confirmations whose credit failed and whose retry task never ran.
    """
    cutoff_iso = (datetime.now(timezone.utc) - timedelta(seconds=grace_seconds)).isoformat()
    pending = (
        await db.user_requests.find(
            {"reward.status": REWARD_PENDING, "reward.created_at": {"$lt": cutoff_iso}},
            {"_id": 0, "id": 1},
        )
        .sort("reward.created_at", 1)
        .to_list(batch_size)
    )
    summary = {"scanned": len(pending), "credited": 0, "failed": 0}
    for request_doc in pending:
        try:
            outcome = await apply_pending_reward(db, request_doc["id"])
        except Exception as exc:
            summary["failed"] += 1
            logger.error("reward_reconcile_failed request_id=%s error=%s", request_doc["id"], exc)
            continue
        if outcome != "not_pending":
            summary["credited"] += 1
    logger.info(
        "reward_reconcile_completed scanned=%s credited=%s failed=%s",
        summary["scanned"],
        summary["credited"],
        summary["failed"],
    )
    return summary
