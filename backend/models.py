from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from errors import ValidationFailed

ACCOUNT_MODEL_STUDENT = "Student"
ACCOUNT_MODEL_PROFILE = "Profile"

# Token and admin payloads carry several spellings for the same role.
ACCOUNT_MODEL_BY_USER_TYPE: Dict[str, str] = {
    "student": ACCOUNT_MODEL_STUDENT,
    "user": ACCOUNT_MODEL_STUDENT,
    "expert": ACCOUNT_MODEL_PROFILE,
    "teacher": ACCOUNT_MODEL_PROFILE,
    "profile": ACCOUNT_MODEL_PROFILE,
}
USER_TYPE_BY_ACCOUNT_MODEL: Dict[str, str] = {
    ACCOUNT_MODEL_STUDENT: "student",
    ACCOUNT_MODEL_PROFILE: "expert",
}
# Collections holding display names and emails for each account model.
PROFILE_COLLECTION_BY_ACCOUNT_MODEL: Dict[str, str] = {
    ACCOUNT_MODEL_STUDENT: "students",
    ACCOUNT_MODEL_PROFILE: "profiles",
}

REQUEST_TYPE_LAB = "Lab"
REQUEST_TYPE_DOCUMENT = "Document"
REQUEST_TYPE_DATA = "Data"
REQUEST_TYPES = {REQUEST_TYPE_LAB, REQUEST_TYPE_DOCUMENT, REQUEST_TYPE_DATA}

STATUS_PENDING = "Pending"
STATUS_IN_PROGRESS = "In Progress"
STATUS_APPROVED = "Approved"
STATUS_REJECTED = "Rejected"
REQUEST_STATUSES = {STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_APPROVED, STATUS_REJECTED}

REQUEST_PRIORITIES = {"Low", "Medium", "High"}

LAB_NATURES = {
    "Chemistry Lab",
    "Physics Lab",
    "Biology Lab",
    "Computer Lab",
    "Engineering Lab",
    "Research Lab",
}
DOCUMENT_TYPES = {
    "Research Paper",
    "Journal Article",
    "Conference Paper",
    "Thesis",
    "Book Chapter",
    "Technical Report",
}
DATA_TYPES = {
    "Dataset",
    "Database Access",
    "API Access",
    "Survey Data",
    "Experimental Data",
    "Historical Data",
}

FULFILLMENT_STAGED = "uploading"
FULFILLMENT_ACTIVE = "approved"
FULFILLMENT_SUPERSEDED = "superseded"
FULFILLMENT_REJECTED = "rejected"
ACCESS_TYPES = {"document_request", "direct_download", "view"}

REWARD_PENDING = "pending"
REWARD_CREDITED = "credited"

NOTIFICATION_TYPES = {
    "DOCUMENT_UPLOADED",
    "REQUEST_APPROVED",
    "REQUEST_REJECTED",
    "FULFILLMENT_APPROVED",
    "FULFILLMENT_REJECTED",
    "NEW_REQUEST",
    "NEW_MESSAGE",
    "PAYMENT_RECEIVED",
    "SYSTEM_ALERT",
}
NOTIFICATION_PRIORITIES = {"low", "medium", "high"}
NOTIFICATION_ENTITY_TYPES = {"UserRequest", "PaperRequest", "Payment", "Message", "System"}


def resolve_account_model(user_type: Optional[str]) -> str:
    account_model = ACCOUNT_MODEL_BY_USER_TYPE.get((user_type or "").strip().lower())
    if not account_model:
        raise ValidationFailed(f"Unsupported user type: {user_type!r}")
    return account_model


def normalize_user_type(user_type: Optional[str]) -> str:
    return USER_TYPE_BY_ACCOUNT_MODEL[resolve_account_model(user_type)]


class CoinAdjustRequest(BaseModel):
    user_id: str
    user_type: str
    amount: int = Field(gt=0)


class AdminBalancesRequest(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=200)
    search_query: str = ""
    user_type: str = "all"


class UserRequestCreate(BaseModel):
    type: str
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    lab_nature: Optional[str] = None
    lab_needs: Optional[str] = None
    lab_additional_info: Optional[str] = None
    document_doi: Optional[str] = None
    document_type: Optional[str] = None
    document_title: Optional[str] = None
    document_publisher: Optional[str] = None
    document_author: Optional[str] = None
    document_published_date: Optional[str] = None
    data_type: Optional[str] = None
    data_title: Optional[str] = None
    data_description: Optional[str] = None


class UserRequestQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    search: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"


class RequestIdPayload(BaseModel):
    request_id: str


class UserRequestUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    request_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    lab_details: Optional[Dict[str, Any]] = None
    document_details: Optional[Dict[str, Any]] = None
    data_details: Optional[Dict[str, Any]] = None


class RequestStatusUpdate(BaseModel):
    request_id: str
    status: str
    response_message: Optional[str] = None


class FulfillmentStatusUpdate(BaseModel):
    request_id: str
    is_fulfilled: bool


class SearchPayload(BaseModel):
    query: str
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)


class OpenRequestQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    type: Optional[str] = None
    search: Optional[str] = None


class PaperDetail(BaseModel):
    title: str
    authors: Optional[Union[str, List[str]]] = None
    doi: Optional[str] = None


class FulfillDocumentRequest(BaseModel):
    user_request_id: str
    file_url: Optional[str] = None
    public_id: Optional[str] = None
    paper_detail: PaperDetail


class FulfillmentListRequest(BaseModel):
    user_request_id: str


class PaperAccessRequest(BaseModel):
    access_type: str = "view"
