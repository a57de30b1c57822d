import json
import logging
import math
import os
import uuid
from base64 import b64decode
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import firebase_admin
from firebase_admin import credentials, messaging
from pymongo import ReturnDocument

from database import without_object_id
from errors import NotFound, ValidationFailed
from models import (
    ACCOUNT_MODEL_STUDENT,
    NOTIFICATION_ENTITY_TYPES,
    NOTIFICATION_PRIORITIES,
    NOTIFICATION_TYPES,
    PROFILE_COLLECTION_BY_ACCOUNT_MODEL,
)

logger = logging.getLogger(__name__)

NOTIFICATION_RETENTION_DAYS = int(os.environ.get("NOTIFICATION_RETENTION_DAYS", "30"))
REQUEST_DASHBOARD_URL = os.environ.get("REQUEST_DASHBOARD_URL", "/user-dashboard/request")

_firebase_initialized = False


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_firebase_enabled() -> bool:
    return os.environ.get("FIREBASE_ENABLED", "false").strip().lower() == "true"


def _resolve_credentials() -> Optional[credentials.Base]:
    service_account_json_b64 = os.environ.get("FIREBASE_SERVICE_ACCOUNT_JSON_BASE64", "").strip()
    if service_account_json_b64:
        try:
            parsed = json.loads(b64decode(service_account_json_b64).decode("utf-8"))
            return credentials.Certificate(parsed)
        except Exception as exc:
            logger.error("firebase_credentials_base64_invalid error=%s", exc)
            return None

    service_account_path = os.environ.get("FIREBASE_SERVICE_ACCOUNT_PATH", "").strip()
    if service_account_path and os.path.exists(service_account_path):
        try:
            return credentials.Certificate(service_account_path)
        except Exception as exc:
            logger.error("firebase_credentials_file_invalid path=%s error=%s", service_account_path, exc)
            return None
    return None


def initialize_firebase() -> bool:
    global _firebase_initialized
    if _firebase_initialized:
        return True
    if firebase_admin._apps:
        _firebase_initialized = True
        return True
    if not _is_firebase_enabled():
        return False

    cred = _resolve_credentials()
    if cred is None:
        logger.warning("firebase_credentials_missing_or_invalid")
        return False
    try:
        firebase_admin.initialize_app(cred)
        _firebase_initialized = True
        logger.info("firebase_initialized")
        return True
    except Exception as exc:
        logger.error("firebase_init_failed error=%s", exc)
        return False


def send_push_notification(
    fcm_token: str,
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
) -> Tuple[bool, str]:
    if not fcm_token:
        return False, "missing_token"
    if not initialize_firebase():
        return False, "firebase_not_ready"

    payload = {str(k): str(v) for k, v in (data or {}).items()}
    try:
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data=payload,
            token=fcm_token,
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(channel_id="request_updates", sound="default"),
            ),
        )
        messaging.send(message)
        return True, "sent"
    except messaging.UnregisteredError:
        logger.warning("push_send_unregistered_token")
        return False, "unregistered"
    except Exception as exc:
        logger.error("push_send_failed error=%s", exc)
        return False, "error"


async def send_push_to_recipient(
    db,
    recipient_id: str,
    recipient_model: str,
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
) -> bool:
    collection_name = PROFILE_COLLECTION_BY_ACCOUNT_MODEL.get(recipient_model)
    if not collection_name:
        return False
    collection = db[collection_name]
    profile = await collection.find_one({"id": recipient_id}, {"_id": 0, "id": 1, "fcm_token": 1})
    token = ((profile or {}).get("fcm_token") or "").strip()
    if not token:
        return False

    sent, reason = send_push_notification(token, title=title, body=body, data=data)
    if not sent and reason == "unregistered":
        await collection.update_one(
            {"id": recipient_id},
            {"$unset": {"fcm_token": ""}, "$set": {"fcm_token_invalidated_at": _utc_now_iso()}},
        )
    if not sent:
        logger.info("push_not_sent recipient_id=%s reason=%s", recipient_id, reason)
    return sent


async def create_notification(
    db,
    *,
    recipient_id: str,
    type: str,
    title: str,
    message: str,
    recipient_model: str = ACCOUNT_MODEL_STUDENT,
    related_entity: Optional[Dict[str, Any]] = None,
    triggered_by: Optional[str] = None,
    priority: str = "medium",
    action_url: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    notification_id: Optional[str] = None,
) -> Dict[str, Any]:
    if not recipient_id or not type or not title or not message:
        raise ValidationFailed("Missing required notification fields")
    if type not in NOTIFICATION_TYPES:
        raise ValidationFailed(f"Unknown notification type: {type}")
    if priority not in NOTIFICATION_PRIORITIES:
        raise ValidationFailed(f"Unknown notification priority: {priority}")
    if related_entity and related_entity.get("entity_type") not in NOTIFICATION_ENTITY_TYPES:
        raise ValidationFailed("Unknown related entity type")

    doc = {
        "id": notification_id or str(uuid.uuid4()),
        "recipient_id": str(recipient_id),
        "recipient_model": recipient_model,
        "type": type,
        "title": title,
        "message": message,
        "related_entity": related_entity,
        "triggered_by": triggered_by,
        "is_read": False,
        "read_at": None,
        "priority": priority,
        "action_url": action_url,
        "metadata": metadata or {},
        "is_deleted": False,
        "created_at": _utc_now_iso(),
    }
    await db.notifications.insert_one(doc)
    doc.pop("_id", None)
    logger.info(
        "notification_saved recipient_id=%s type=%s notification_id=%s",
        recipient_id,
        type,
        doc["id"],
    )
    return doc


def build_document_uploaded_notification(
    *,
    requester_id: str,
    uploader_name: str,
    document_title: Optional[str],
    user_request_id: str,
    uploader_id: Optional[str] = None,
    requester_model: str = ACCOUNT_MODEL_STUDENT,
) -> Dict[str, Any]:
    title_suffix = f': "{document_title}"' if document_title else ""
    return {
        "recipient_id": requester_id,
        "recipient_model": requester_model,
        "type": "DOCUMENT_UPLOADED",
        "title": "Someone is trying to fulfill your request!",
        "message": (
            f"{uploader_name} has uploaded a document to fulfill your request{title_suffix}. "
            "Please review and approve or reject the document."
        ),
        "related_entity": {"entity_type": "UserRequest", "entity_id": user_request_id},
        "triggered_by": uploader_id,
        "priority": "high",
        "action_url": REQUEST_DASHBOARD_URL,
        "metadata": {
            "uploader_name": uploader_name,
            "document_title": document_title,
            "user_request_id": user_request_id,
            "requires_approval": True,
        },
    }


def build_fulfillment_approved_notification(
    *,
    fulfiller_id: str,
    fulfiller_model: str,
    requester_name: str,
    request_title: Optional[str],
    user_request_id: str,
    reward: int,
) -> Dict[str, Any]:
    title_suffix = f': "{request_title}"' if request_title else ""
    message = f"{requester_name} has approved the document you uploaded for their request{title_suffix}."
    if reward:
        message += f" You have earned {reward} coins for helping!"
    return {
        "recipient_id": fulfiller_id,
        "recipient_model": fulfiller_model,
        "type": "FULFILLMENT_APPROVED",
        "title": "Your document was approved!",
        "message": message,
        "related_entity": {"entity_type": "UserRequest", "entity_id": user_request_id},
        "priority": "high",
        "action_url": REQUEST_DASHBOARD_URL,
        "metadata": {
            "requester_name": requester_name,
            "request_title": request_title,
            "user_request_id": user_request_id,
            "approved": True,
        },
    }


def build_fulfillment_rejected_notification(
    *,
    fulfiller_id: str,
    fulfiller_model: str,
    requester_name: str,
    request_title: Optional[str],
    user_request_id: str,
) -> Dict[str, Any]:
    title_suffix = f': "{request_title}"' if request_title else ""
    return {
        "recipient_id": fulfiller_id,
        "recipient_model": fulfiller_model,
        "type": "FULFILLMENT_REJECTED",
        "title": "Document feedback received",
        "message": (
            f"{requester_name} has reviewed the document you uploaded for their request{title_suffix}. "
            "The document did not meet their requirements."
        ),
        "related_entity": {"entity_type": "UserRequest", "entity_id": user_request_id},
        "priority": "medium",
        "action_url": REQUEST_DASHBOARD_URL,
        "metadata": {
            "requester_name": requester_name,
            "request_title": request_title,
            "user_request_id": user_request_id,
            "approved": False,
        },
    }


async def list_notifications(
    db,
    recipient_id: str,
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    type: Optional[str] = None,
) -> Dict[str, Any]:
    page = max(1, int(page))
    limit = max(1, min(int(limit), 100))
    query: Dict[str, Any] = {"recipient_id": recipient_id, "is_deleted": False}
    if unread_only:
        query["is_read"] = False
    if type:
        query["type"] = type

    notifications = (
        await db.notifications.find(query, {"_id": 0})
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(limit)
    )
    total_count = await db.notifications.count_documents(query)
    unread_count = await get_unread_count(db, recipient_id)
    return {
        "notifications": notifications,
        "pagination": {
            "current_page": page,
            "total_pages": math.ceil(total_count / limit) if total_count else 0,
            "total_count": total_count,
            "limit": limit,
        },
        "unread_count": unread_count,
    }


async def get_unread_count(db, recipient_id: str) -> int:
    return await db.notifications.count_documents(
        {"recipient_id": recipient_id, "is_read": False, "is_deleted": False}
    )


async def mark_as_read(db, notification_id: str, recipient_id: str) -> Dict[str, Any]:
    updated = await db.notifications.find_one_and_update(
        {"id": notification_id, "recipient_id": recipient_id, "is_deleted": False},
        {"$set": {"is_read": True, "read_at": _utc_now_iso()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("Notification not found")
    return without_object_id(updated)


async def mark_all_as_read(db, recipient_id: str) -> Dict[str, Any]:
    result = await db.notifications.update_many(
        {"recipient_id": recipient_id, "is_read": False, "is_deleted": False},
        {"$set": {"is_read": True, "read_at": _utc_now_iso()}},
    )
    return {
        "modified_count": result.modified_count,
        "message": f"{result.modified_count} notifications marked as read",
    }


async def delete_notification(db, notification_id: str, recipient_id: str) -> Dict[str, Any]:
    updated = await db.notifications.find_one_and_update(
        {"id": notification_id, "recipient_id": recipient_id, "is_deleted": False},
        {"$set": {"is_deleted": True, "deleted_at": _utc_now_iso()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("Notification not found")
    return without_object_id(updated)


async def delete_all_read(db, recipient_id: str) -> Dict[str, Any]:
    result = await db.notifications.update_many(
        {"recipient_id": recipient_id, "is_read": True, "is_deleted": False},
        {"$set": {"is_deleted": True, "deleted_at": _utc_now_iso()}},
    )
    return {
        "modified_count": result.modified_count,
        "message": f"{result.modified_count} notifications deleted",
    }


async def cleanup_old_notifications(db, days: int = NOTIFICATION_RETENTION_DAYS) -> Dict[str, Any]:
    cutoff_iso = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    result = await db.notifications.delete_many({"created_at": {"$lt": cutoff_iso}, "is_read": True})
    logger.info("notification_cleanup_completed deleted=%s cutoff=%s", result.deleted_count, cutoff_iso)
    return {
        "deleted_count": result.deleted_count,
        "message": f"{result.deleted_count} old notifications permanently deleted",
    }
