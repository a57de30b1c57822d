import logging
import secrets
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import notification_service
import outbox
from database import without_object_id
from errors import Conflict, NotFound, ValidationFailed
from models import (
    ACCESS_TYPES,
    FULFILLMENT_ACTIVE,
    FULFILLMENT_STAGED,
    FULFILLMENT_SUPERSEDED,
    STATUS_APPROVED,
    STATUS_REJECTED,
    normalize_user_type,
    resolve_account_model,
)
from user_request_service import get_display_profile

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase
RECORD_SETTLE_ATTEMPTS = 5


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_doi() -> str:
    """Placeholder identifier for uploads that arrive without a DOI."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"DOI-{int(time.time() * 1000)}-{suffix}"


async def _get_request(db, user_request_id: str) -> Optional[Dict[str, Any]]:
    return await db.user_requests.find_one({"id": user_request_id}, {"_id": 0})


async def _retire_older_records(db, user_request_id: str, seq: int, now_iso: str) -> None:
    await db.paper_requests.update_many(
        {
            "user_request_id": user_request_id,
            "request_status": {"$in": [FULFILLMENT_STAGED, FULFILLMENT_ACTIVE]},
            "$or": [{"fulfillment_seq": {"$lt": seq}}, {"fulfillment_seq": {"$exists": False}}],
        },
        {"$set": {"request_status": FULFILLMENT_SUPERSEDED, "is_deleted": True, "updated_at": now_iso}},
    )


async def _current_fulfillment_id(db, user_request_id: str) -> Optional[str]:
    current = await db.user_requests.find_one({"id": user_request_id}, {"_id": 0, "fulfillment_id": 1})
    return (current or {}).get("fulfillment_id")


async def _settle_record(db, user_request_id: str, record_id: str, seq: int, now_iso: str) -> bool:
    """Activate a staged record unless a newer upload or a reject overtook it.

    Uploads retire only records with a lower sequence number, and each upload
    re-reads the request after activating, so racing uploads converge on the
    one the request points at.
    """
    activated = False
    for _ in range(RECORD_SETTLE_ATTEMPTS):
        await _retire_older_records(db, user_request_id, seq, now_iso)
        try:
            await db.paper_requests.update_one(
                {"id": record_id, "request_status": FULFILLMENT_STAGED},
                {"$set": {"request_status": FULFILLMENT_ACTIVE, "is_deleted": False, "updated_at": now_iso}},
            )
        except DuplicateKeyError:
            # Another record is still active; only worth waiting for if this one is current.
            if await _current_fulfillment_id(db, user_request_id) != record_id:
                break
            continue
        activated = True
        break

    is_current = await _current_fulfillment_id(db, user_request_id) == record_id
    if activated and is_current:
        return True

    if is_current:
        logger.error(
            "fulfillment_record_activation_failed request_id=%s paper_request_id=%s",
            user_request_id,
            record_id,
        )
    await db.paper_requests.update_one(
        {"id": record_id, "request_status": {"$in": [FULFILLMENT_STAGED, FULFILLMENT_ACTIVE]}},
        {"$set": {"request_status": FULFILLMENT_SUPERSEDED, "is_deleted": True, "updated_at": now_iso}},
    )
    return False


async def fulfill_user_request_with_document(
    db,
    user_request_id: str,
    uploaded_by: str,
    uploader_type: str,
    file_url: Optional[str],
    public_id: Optional[str],
    paper_detail: Dict[str, Any],
) -> Dict[str, Any]:
    if not file_url:
        raise ValidationFailed("File is required to fulfill a request")
    paper_title = ((paper_detail or {}).get("title") or "").strip()
    if not paper_title:
        raise ValidationFailed("Paper title is required")
    uploader_type = normalize_user_type(uploader_type)

    request_doc = await db.user_requests.find_one({"id": user_request_id, "is_deleted": False}, {"_id": 0})
    if not request_doc:
        raise NotFound("User request not found")
    if request_doc["requester"]["user_id"] == str(uploaded_by):
        raise ValidationFailed("You cannot fulfill your own request")

    doi_number = (paper_detail.get("doi") or "").strip() or generate_doi()
    authors: Optional[Union[str, List[str]]] = paper_detail.get("authors")
    now_iso = _utc_now_iso()
    fulfiller = {"user_id": str(uploaded_by), "user_type": uploader_type}
    record_id = str(uuid.uuid4())

    updated = await db.user_requests.find_one_and_update(
        {
            "id": user_request_id,
            "is_deleted": False,
            "is_fulfilled": False,
            "status": {"$ne": STATUS_REJECTED},
        },
        {
            "$set": {
                "status": STATUS_APPROVED,
                "fulfilled_by": fulfiller,
                "fulfillment_id": record_id,
                "admin_response.response_message": "Document uploaded. Please review and confirm.",
                "admin_response.response_date": now_iso,
                "updated_at": now_iso,
            },
            "$inc": {"fulfillment_seq": 1},
            "$push": {
                "attachments": {
                    "file_name": f"{paper_title}.pdf",
                    "file_url": file_url,
                    "file_type": "application/pdf",
                    "uploaded_at": now_iso,
                }
            },
        },
        return_document=ReturnDocument.AFTER,
    )
    updated = without_object_id(updated)
    if not updated:
        raise Conflict("This request is already fulfilled or closed")

    record = {
        "id": record_id,
        "user_request_id": user_request_id,
        "fulfillment_seq": updated["fulfillment_seq"],
        "fulfilled_by": fulfiller,
        "paper_detail": {"title": paper_title, "authors": authors, "doi": paper_detail.get("doi")},
        "doi_number": doi_number,
        "file_url": file_url,
        "cloudinary_public_id": public_id,
        "request_status": FULFILLMENT_STAGED,
        "is_deleted": True,
        "access_count": 0,
        "last_accessed_at": None,
        "last_accessed_by": None,
        "access_history": [],
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    await db.paper_requests.insert_one(record)
    record.pop("_id", None)

    if not await _settle_record(db, user_request_id, record_id, record["fulfillment_seq"], now_iso):
        record.update({"request_status": FULFILLMENT_SUPERSEDED, "is_deleted": True})
        logger.info(
            "request_fulfillment_superseded request_id=%s paper_request_id=%s uploader_id=%s",
            user_request_id,
            record_id,
            uploaded_by,
        )
        return {"user_request": await _get_request(db, user_request_id), "paper_request": record}

    record.update({"request_status": FULFILLMENT_ACTIVE, "is_deleted": False})
    logger.info(
        "request_fulfillment_uploaded request_id=%s paper_request_id=%s uploader_id=%s doi=%s",
        user_request_id,
        record_id,
        uploaded_by,
        doi_number,
    )

    requester = updated["requester"]
    uploader_profile = await get_display_profile(db, uploaded_by, uploader_type)
    await outbox.queue_notification(
        db,
        notification_service.build_document_uploaded_notification(
            requester_id=requester["user_id"],
            requester_model=resolve_account_model(requester.get("user_type")),
            uploader_name=uploader_profile["name"] or "Someone",
            document_title=paper_title,
            user_request_id=user_request_id,
            uploader_id=str(uploaded_by),
        ),
    )

    requester_profile = await get_display_profile(db, requester["user_id"], requester.get("user_type"))
    if requester_profile["email"]:
        outbox.queue_request_fulfilled_email(
            {
                "email": requester_profile["email"],
                "user_name": requester_profile["name"] or "there",
                "document_title": paper_title,
                "document_authors": authors,
                "document_doi": doi_number,
                "document_url": file_url,
                "request_description": updated.get("description") or "",
                "request_date": updated.get("created_at") or "",
                "fulfilled_date": now_iso,
            }
        )
    return {"user_request": updated, "paper_request": record}


async def record_access(
    db,
    paper_request_id: str,
    accessed_by: str,
    access_type: str = "view",
) -> Dict[str, Any]:
    if access_type not in ACCESS_TYPES:
        raise ValidationFailed(f"Invalid access type: {access_type}")
    now_iso = _utc_now_iso()
    updated = await db.paper_requests.find_one_and_update(
        {"id": paper_request_id, "is_deleted": False},
        {
            "$inc": {"access_count": 1},
            "$set": {"last_accessed_at": now_iso, "last_accessed_by": str(accessed_by)},
            "$push": {
                "access_history": {
                    "accessed_by": str(accessed_by),
                    "accessed_at": now_iso,
                    "access_type": access_type,
                }
            },
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("Paper request not found")
    return without_object_id(updated)


async def list_fulfillments(db, user_request_id: str, include_retired: bool = False) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"user_request_id": user_request_id}
    if not include_retired:
        query["is_deleted"] = False
    return await db.paper_requests.find(query, {"_id": 0}).sort("created_at", -1).to_list(100)
