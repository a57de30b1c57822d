from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import os
import logging
import uuid
import time

import jwt
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

import database
import coin_service
import notification_service
import paper_request_service
import user_request_service
from migrations.apply_coin_indexes import create_coin_indexes
from migrations.apply_request_indexes import create_request_indexes
from errors import Forbidden, ValidationFailed
from models import (
    AdminBalancesRequest,
    CoinAdjustRequest,
    FulfillDocumentRequest,
    FulfillmentListRequest,
    FulfillmentStatusUpdate,
    OpenRequestQuery,
    PaperAccessRequest,
    PROFILE_COLLECTION_BY_ACCOUNT_MODEL,
    RequestIdPayload,
    RequestStatusUpdate,
    SearchPayload,
    UserRequestCreate,
    UserRequestQuery,
    UserRequestUpdate,
    normalize_user_type,
    resolve_account_model,
)

JWT_SECRET = os.environ.get("JWT_SECRET", "").strip()
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

# Error monitoring is optional and only enabled when SENTRY_DSN is provided.
SENTRY_DSN = os.environ.get("SENTRY_DSN", "").strip()
if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        environment=os.environ.get("SENTRY_ENVIRONMENT", ENVIRONMENT),
        traces_sample_rate=float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.2")),
        integrations=[
            FastApiIntegration(),
            StarletteIntegration(),
        ],
    )
    logger.info("Sentry monitoring initialized")

security = HTTPBearer()

app = FastAPI(title="Research Desk API")
api_router = APIRouter(prefix="/api")


class PushTokenUpdateRequest(BaseModel):
    fcm_token: str


def get_database():
    return database.get_db()


def ok(data: Any = None, message: str = "OK") -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


def decode_token(token: str) -> Dict[str, Any]:
    if not JWT_SECRET:
        raise HTTPException(status_code=500, detail="Authentication is not configured")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not payload.get("user_id") or not payload.get("user_type"):
        raise HTTPException(status_code=401, detail="Malformed token")
    return payload


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    payload = decode_token(credentials.credentials)
    try:
        user_type = normalize_user_type(payload["user_type"])
    except ValidationFailed:
        raise HTTPException(status_code=401, detail="Unsupported user type in token")
    return {
        "id": str(payload["user_id"]),
        "user_type": user_type,
        "role": str(payload.get("role") or "").strip().lower(),
    }


async def require_admin(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if current_user.get("role") != "admin":
        raise Forbidden("Admin access required")
    return current_user


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception(
            "request_id=%s method=%s path=%s status=500 duration_ms=%s error=%s",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
            str(e),
        )
        raise
    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_id=%s method=%s path=%s status=%s duration_ms=%s",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(
        "HTTPException request_id=%s path=%s status=%s detail=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        exc.detail,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    logger.exception("Unhandled server error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@api_router.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


# Coins


@api_router.get("/coins/balance")
async def get_coin_balance(
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    balance = await coin_service.get_balance(db, current_user["id"], current_user["user_type"])
    return ok(balance, "Coin balance retrieved successfully")


@api_router.get("/coins/check-request-creation")
async def check_request_creation(
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    result = await coin_service.get_request_creation_balance(db, current_user["id"], current_user["user_type"])
    return ok(result, result["message"])


@api_router.post("/coins/process-request-creation")
async def process_request_creation(
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    result = await coin_service.process_request_creation(db, current_user["id"], current_user["user_type"])
    return ok(result, result["message"])


@api_router.get("/coins/transactions")
async def list_coin_transactions(
    limit: int = 50,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    entries = await coin_service.list_transactions(db, current_user["id"], current_user["user_type"], limit)
    return ok(entries, "Coin transactions retrieved successfully")


@api_router.post("/coins/add")
async def add_coins(
    payload: CoinAdjustRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    db=Depends(get_database),
):
    result = await coin_service.add(
        db,
        payload.user_id,
        payload.user_type,
        payload.amount,
        reason="admin_add",
        reference=f"admin:{admin['id']}",
    )
    return ok(result, result["message"])


@api_router.post("/coins/deduct")
async def deduct_coins(
    payload: CoinAdjustRequest,
    admin: Dict[str, Any] = Depends(require_admin),
    db=Depends(get_database),
):
    result = await coin_service.deduct(
        db,
        payload.user_id,
        payload.user_type,
        payload.amount,
        reason="admin_deduct",
        reference=f"admin:{admin['id']}",
    )
    return ok(result, result["message"])


@api_router.post("/admin/coins/all-balances")
async def admin_list_balances(
    payload: AdminBalancesRequest,
    _: Dict[str, Any] = Depends(require_admin),
    db=Depends(get_database),
):
    result = await coin_service.list_balances(
        db,
        page=payload.page,
        limit=payload.limit,
        search_query=payload.search_query,
        user_type=payload.user_type,
    )
    return ok(result, "User balances retrieved successfully")


@api_router.get("/admin/coins/balance/{user_id}/{user_type}")
async def admin_get_balance(
    user_id: str,
    user_type: str,
    _: Dict[str, Any] = Depends(require_admin),
    db=Depends(get_database),
):
    balance = await coin_service.get_balance(db, user_id, user_type)
    return ok(balance, "Coin balance retrieved successfully")


@api_router.get("/admin/coins/statistics")
async def admin_coin_statistics(
    _: Dict[str, Any] = Depends(require_admin),
    db=Depends(get_database),
):
    stats = await coin_service.get_statistics(db)
    return ok(stats, "Coin statistics retrieved successfully")


# User requests


@api_router.post("/user-requests/create")
async def create_user_request(
    payload: UserRequestCreate,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    created = await user_request_service.create_request(
        db,
        current_user["id"],
        current_user["user_type"],
        payload.model_dump(),
    )
    return ok(created, "User request created successfully")


@api_router.post("/user-requests/getAll")
async def list_user_requests(
    payload: UserRequestQuery,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    result = await user_request_service.list_requests(db, current_user["id"], **payload.model_dump())
    return ok(result, "User requests retrieved successfully")


@api_router.post("/user-requests/getById")
async def get_user_request(
    payload: RequestIdPayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    requester_id = None if current_user["role"] == "admin" else current_user["id"]
    request_doc = await user_request_service.get_request(db, payload.request_id, requester_id)
    return ok(request_doc, "User request retrieved successfully")


@api_router.post("/user-requests/update")
async def update_user_request(
    payload: UserRequestUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    updates = payload.model_dump(exclude={"request_id"}, exclude_none=True)
    updated = await user_request_service.update_request(db, payload.request_id, current_user["id"], updates)
    return ok(updated, "User request updated successfully")


@api_router.post("/user-requests/delete")
async def delete_user_request(
    payload: RequestIdPayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    requester_id = None if current_user["role"] == "admin" else current_user["id"]
    await user_request_service.delete_request(db, payload.request_id, requester_id)
    return ok({"id": payload.request_id}, "User request deleted successfully")


@api_router.post("/user-requests/getStatistics")
async def user_request_statistics(
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    requester_id = None if current_user["role"] == "admin" else current_user["id"]
    stats = await user_request_service.get_request_statistics(db, requester_id)
    return ok(stats, "User request statistics retrieved successfully")


@api_router.post("/user-requests/updateStatus")
async def update_user_request_status(
    payload: RequestStatusUpdate,
    admin: Dict[str, Any] = Depends(require_admin),
    db=Depends(get_database),
):
    updated = await user_request_service.update_request_status(
        db,
        payload.request_id,
        payload.status,
        responded_by=admin["id"],
        response_message=payload.response_message,
    )
    return ok(updated, "User request status updated successfully")


@api_router.post("/user-requests/updateFulfillmentStatus")
async def update_fulfillment_status(
    payload: FulfillmentStatusUpdate,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    result = await user_request_service.update_fulfillment_status(
        db,
        payload.request_id,
        current_user["id"],
        payload.is_fulfilled,
    )
    return ok(
        {"request": result["request"], "reward_status": result["reward_status"]},
        result["message"],
    )


@api_router.post("/user-requests/search")
async def search_user_requests(
    payload: SearchPayload,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    result = await user_request_service.search_requests(
        db, current_user["id"], payload.query, page=payload.page, limit=payload.limit
    )
    return ok(result, "Search completed successfully")


@api_router.post("/user-requests/website/open")
async def list_open_user_requests(
    payload: OpenRequestQuery,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    result = await user_request_service.list_open_requests(
        db,
        viewer_id=current_user["id"],
        page=payload.page,
        limit=payload.limit,
        type=payload.type,
        search=payload.search,
    )
    return ok(result, "Open requests retrieved successfully")


# Paper requests


@api_router.post("/paper-requests/fulfill-user-request")
async def fulfill_user_request(
    payload: FulfillDocumentRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    result = await paper_request_service.fulfill_user_request_with_document(
        db,
        user_request_id=payload.user_request_id,
        uploaded_by=current_user["id"],
        uploader_type=current_user["user_type"],
        file_url=payload.file_url,
        public_id=payload.public_id,
        paper_detail=payload.paper_detail.model_dump(),
    )
    return ok(result, "Document uploaded. Waiting for the requester to confirm.")


@api_router.post("/paper-requests/by-user-request")
async def list_paper_requests_for_user_request(
    payload: FulfillmentListRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    requester_id = None if current_user["role"] == "admin" else current_user["id"]
    await user_request_service.get_request(db, payload.user_request_id, requester_id)
    records = await paper_request_service.list_fulfillments(db, payload.user_request_id)
    return ok(records, "Fulfillments retrieved successfully")


@api_router.post("/paper-requests/{paper_request_id}/access")
async def record_paper_access(
    paper_request_id: str,
    payload: PaperAccessRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    record = await paper_request_service.record_access(
        db, paper_request_id, current_user["id"], payload.access_type
    )
    return ok(
        {"id": record["id"], "access_count": record["access_count"], "file_url": record["file_url"]},
        "Access recorded",
    )


# Notifications


@api_router.get("/notifications")
async def list_notifications(
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
    type: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    result = await notification_service.list_notifications(
        db, current_user["id"], page=page, limit=limit, unread_only=unread_only, type=type
    )
    return ok(result, "Notifications retrieved successfully")


@api_router.get("/notifications/unread-count")
async def unread_notification_count(
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    count = await notification_service.get_unread_count(db, current_user["id"])
    return ok({"unread_count": count}, "Unread count retrieved successfully")


@api_router.put("/notifications/mark-all-read")
async def mark_all_notifications_read(
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    result = await notification_service.mark_all_as_read(db, current_user["id"])
    return ok({"modified_count": result["modified_count"]}, result["message"])


@api_router.put("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    updated = await notification_service.mark_as_read(db, notification_id, current_user["id"])
    return ok(updated, "Notification marked as read")


@api_router.delete("/notifications/read")
async def delete_read_notifications(
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    result = await notification_service.delete_all_read(db, current_user["id"])
    return ok({"modified_count": result["modified_count"]}, result["message"])


@api_router.delete("/notifications/{notification_id}")
async def delete_notification(
    notification_id: str,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    await notification_service.delete_notification(db, notification_id, current_user["id"])
    return ok({"id": notification_id}, "Notification deleted successfully")


@api_router.post("/notifications/register-token")
async def register_push_token(
    payload: PushTokenUpdateRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    db=Depends(get_database),
):
    token = (payload.fcm_token or "").strip()
    if len(token) < 20:
        raise HTTPException(status_code=400, detail="Invalid FCM token")
    collection_name = PROFILE_COLLECTION_BY_ACCOUNT_MODEL[resolve_account_model(current_user["user_type"])]
    await db[collection_name].update_one(
        {"id": current_user["id"]},
        {"$set": {"fcm_token": token, "fcm_token_updated_at": datetime.now(timezone.utc).isoformat()}},
    )
    return ok(None, "FCM token registered")


@app.on_event("startup")
async def startup_checks():
    if not JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set")
    if coin_service.DEFAULT_COIN_BALANCE < 0:
        raise RuntimeError("DEFAULT_COIN_BALANCE cannot be negative")
    if coin_service.REQUEST_CREATION_COST <= 0 or coin_service.FULFILLMENT_REWARD <= 0:
        raise RuntimeError("REQUEST_CREATION_COST and FULFILLMENT_REWARD must be greater than zero")
    if coin_service.CRITICAL_BALANCE_THRESHOLD > coin_service.LOW_BALANCE_THRESHOLD:
        raise RuntimeError("CRITICAL_BALANCE_THRESHOLD cannot exceed LOW_BALANCE_THRESHOLD")
    if notification_service.NOTIFICATION_RETENTION_DAYS <= 0:
        raise RuntimeError("NOTIFICATION_RETENTION_DAYS must be greater than zero")

    db = database.get_db()
    await create_coin_indexes(db)
    await create_request_indexes(db)

    notification_service.initialize_firebase()
    logger.info("Startup checks completed")


@app.on_event("shutdown")
async def shutdown_db_client():
    database.close_client()


app.include_router(api_router)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS.split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)
