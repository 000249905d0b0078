from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

RequestStatus = Literal["Pending", "InProgress", "Completed", "Rejected", "Cancelled"]
RequestCategory = Literal["construction", "renovation", "service"]
NotificationType = Literal[
    "service-request",
    "status-update",
    "message",
    "info",
    "success",
    "warning",
    "error",
    "system",
]


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class DocumentModel(BaseModel):
    """Base for models persisted as documents.

    Attributes are snake_case in Python and camelCase in the stored document.
    The document id lives in the path, not in the body.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = ""

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"id"})

    @classmethod
    def from_snapshot(cls, snapshot: Any):
        return cls.model_validate({**(snapshot.data or {}), "id": snapshot.id})


class Identity(BaseModel):
    id: str
    display_name: str
    email: str = ""


class ParticipantDetail(BaseModel):
    name: str = "User"
    role: str = "user"


class Conversation(DocumentModel):
    participants: List[str]
    participant_details: Dict[str, ParticipantDetail] = Field(default_factory=dict)
    last_message: str = ""
    last_sender_id: Optional[str] = None
    unread_for: Dict[str, bool] = Field(default_factory=dict)
    created_at: str
    updated_at: str


class MessageAttachment(BaseModel):
    name: str
    url: str
    type: str = "application/octet-stream"
    size: int = 0


class ChatMessage(DocumentModel):
    sender_id: str
    text: str
    attachments: List[MessageAttachment] = Field(default_factory=list)
    created_at: str


class ServiceRequestBase(DocumentModel):
    label_field: ClassVar[str] = ""
    kind_title: ClassVar[str] = "Service"

    requester_id: str
    provider_id: Optional[str] = None
    status: RequestStatus = "Pending"
    budget: float = Field(ge=0)
    description: str = ""
    property_id: Optional[str] = None
    conversation_id: Optional[str] = None
    history_count: int = 0
    created_at: str
    updated_at: str

    @property
    def label(self) -> str:
        value = getattr(self, self.label_field, "") if self.label_field else ""
        return value or f"{self.kind_title.lower()} project"


class ConstructionRequest(ServiceRequestBase):
    label_field: ClassVar[str] = "project_type"
    kind_title: ClassVar[str] = "Construction"

    category: Literal["construction"] = "construction"
    project_type: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class RenovationRequest(ServiceRequestBase):
    label_field: ClassVar[str] = "service_category"
    kind_title: ClassVar[str] = "Renovation"

    category: Literal["renovation"] = "renovation"
    service_category: str = ""
    preferred_date: Optional[str] = None
    photos: List[str] = Field(default_factory=list)


class GeneralServiceRequest(ServiceRequestBase):
    label_field: ClassVar[str] = "service_type"
    kind_title: ClassVar[str] = "Service"

    category: Literal["service"] = "service"
    service_type: str = ""


ServiceRequest = Annotated[
    Union[ConstructionRequest, RenovationRequest, GeneralServiceRequest],
    Field(discriminator="category"),
]

_service_request_adapter: TypeAdapter = TypeAdapter(ServiceRequest)


def parse_service_request(payload: Dict[str, Any]) -> ServiceRequestBase:
    return _service_request_adapter.validate_python(payload)


class StatusHistoryEntry(DocumentModel):
    sequence: int = Field(ge=1)
    kind: Literal["created", "transition", "update", "assignment"]
    status: RequestStatus
    previous_status: Optional[RequestStatus] = None
    actor_id: str
    note: str = ""
    images: List[str] = Field(default_factory=list)
    created_at: str


class TransitionResult(BaseModel):
    request: ServiceRequest
    entry: StatusHistoryEntry
    notified: bool


class NotificationRecord(DocumentModel):
    recipient_id: str
    title: str
    message: str
    type: NotificationType = "info"
    link: Optional[str] = None
    read: bool = False
    created_at: str
    read_at: Optional[str] = None


class OutboxEntry(DocumentModel):
    recipient_id: str
    title: str
    message: str
    type: NotificationType = "info"
    link: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: str


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = "marketsync-demo"
    display_name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class ConversationResolveRequest(BaseModel):
    user_id: str
    other_user_id: str


class ConversationResolveResponse(BaseModel):
    conversation_id: str


class MessageCreateRequest(BaseModel):
    sender_id: str
    text: str


class ConversationReadRequest(BaseModel):
    user_id: str


class ServiceRequestCreate(BaseModel):
    requester_id: str
    category: RequestCategory
    budget: float = Field(ge=0)
    description: str = ""
    provider_id: Optional[str] = None
    property_id: Optional[str] = None
    project_type: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    service_category: Optional[str] = None
    preferred_date: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    service_type: Optional[str] = None


class StatusTransitionRequest(BaseModel):
    actor_user_id: str
    status: RequestStatus
    note: str = ""


class ClaimRequest(BaseModel):
    provider_user_id: str


class ProgressUpdateRequest(BaseModel):
    actor_user_id: str
    note: str = ""
    image_urls: List[str] = Field(default_factory=list)


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"
