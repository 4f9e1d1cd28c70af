from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, constr, field_validator

from relaydesk.core.webhook_settings import WEBHOOK_CATEGORIES, is_valid_webhook_url

ShortText = constr(strip_whitespace=True, min_length=1, max_length=255)
LongText = constr(strip_whitespace=True, max_length=8192)


class UserRole(str, Enum):
    ADMIN = "admin"
    WORKER = "worker"
    VIEWER = "viewer"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TicketUrgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TicketStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class BackupType(str, Enum):
    N8N_WORKFLOW = "n8n_workflow"
    AI_PROMPT = "ai_prompt"


class ShareAccessRole(str, Enum):
    VIEWER = "viewer"
    EDITOR = "editor"


def _validate_optional_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if not is_valid_webhook_url(cleaned):
        raise ValueError("must be an absolute http(s) URL")
    return cleaned


WebhookUrl = Annotated[Optional[str], Field(max_length=2048), AfterValidator(_validate_optional_url)]


class UserBase(BaseModel):
    email: EmailStr
    full_name: Optional[str] = Field(default=None, max_length=255)


class UserCreate(UserBase):
    password: str = Field(min_length=8, max_length=128)


class UserRead(UserBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    role: UserRole
    approval_status: ApprovalStatus
    webhook_url: Optional[str] = None
    created_at: datetime


class UserProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=255)
    webhook_url: WebhookUrl = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RoleUpdate(BaseModel):
    role: UserRole


class ApprovalUpdate(BaseModel):
    approval_status: ApprovalStatus


class TicketCreate(BaseModel):
    title: ShortText
    details: Optional[LongText] = None
    urgency: TicketUrgency = TicketUrgency.MEDIUM
    deadline: Optional[datetime] = None
    assigned_to: Optional[int] = None


class TicketUpdate(BaseModel):
    title: Optional[ShortText] = None
    details: Optional[LongText] = None
    urgency: Optional[TicketUrgency] = None
    status: Optional[TicketStatus] = None
    deadline: Optional[datetime] = None
    assigned_to: Optional[int] = None


class TicketEdit(BaseModel):
    title: Optional[ShortText] = None
    details: Optional[LongText] = None
    urgency: Optional[TicketUrgency] = None
    deadline: Optional[datetime] = None


class TicketComplete(BaseModel):
    solution_type: Optional[str] = Field(default=None, max_length=64)
    solution_data: Optional[LongText] = None
    output_result: Optional[LongText] = None


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    details: Optional[str]
    urgency: TicketUrgency
    status: TicketStatus
    deadline: Optional[datetime]
    created_by: int
    assigned_to: Optional[int]
    solution_type: Optional[str]
    solution_data: Optional[str]
    output_result: Optional[str]
    edited: bool
    created_at: datetime
    updated_at: datetime


class MailCreate(BaseModel):
    recipient_email: Optional[EmailStr] = None
    subject: ShortText
    body: LongText = ""
    is_draft: bool = False
    reply_to_mail_id: Optional[int] = None


class MailRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sender_id: int
    recipient_id: Optional[int]
    subject: str
    body: str
    is_draft: bool
    is_read: bool
    thread_id: Optional[str]
    reply_to_mail_id: Optional[int]
    created_at: datetime


class BackupCreate(BaseModel):
    title: ShortText
    backup_type: BackupType
    description: Optional[LongText] = None
    content: Dict[str, Any] = Field(default_factory=dict)


class BackupRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    title: str
    backup_type: BackupType
    description: Optional[str]
    content: Dict[str, Any]
    created_at: datetime


class BackupShareCreate(BaseModel):
    recipient_email: EmailStr
    access_role: ShareAccessRole = ShareAccessRole.VIEWER


class BackupShareRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    backup_id: int
    owner_id: int
    recipient_id: int
    access_role: ShareAccessRole
    shared_at: datetime


class NotificationSettingsRead(BaseModel):
    new_ticket: bool = True
    deleted_ticket: bool = True
    in_work_ticket: bool = True
    updated_ticket: bool = True
    solved_ticket: bool = True
    shared_workflow: bool = True
    shared_prompt: bool = True
    role_change: bool = True
    new_mail: bool = True


class NotificationSettingsUpdate(BaseModel):
    new_ticket: Optional[bool] = None
    deleted_ticket: Optional[bool] = None
    in_work_ticket: Optional[bool] = None
    updated_ticket: Optional[bool] = None
    solved_ticket: Optional[bool] = None
    shared_workflow: Optional[bool] = None
    shared_prompt: Optional[bool] = None
    role_change: Optional[bool] = None
    new_mail: Optional[bool] = None


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    message: str
    type: str
    redirect_path: Optional[str]
    is_read: bool
    created_at: datetime


class SystemSettingWrite(BaseModel):
    setting_key: constr(strip_whitespace=True, min_length=1, max_length=255)
    setting_value: Optional[str] = Field(default=None, max_length=8192)
    setting_description: Optional[str] = Field(default=None, max_length=1024)
    setting_type: str = Field(default="string", max_length=32)


class SystemSettingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    setting_key: str
    setting_value: Optional[str]
    setting_description: Optional[str]
    setting_type: str
    updated_by: Optional[int]
    updated_at: datetime


class WebhookSettingsUpdate(BaseModel):
    webhook_url: WebhookUrl = None
    base_url: Optional[str] = Field(default=None, max_length=2048)
    paths: Dict[str, Optional[str]] = Field(default_factory=dict)

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("paths")
    @classmethod
    def _known_categories(cls, value: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
        unknown = sorted(set(value) - set(WEBHOOK_CATEGORIES))
        if unknown:
            raise ValueError(f"Unknown webhook categories: {', '.join(unknown)}")
        return {key: (path.strip() or None) if path else None for key, path in value.items()}


class WebhookSettingsRead(BaseModel):
    webhook_url: Optional[str]
    base_url: Optional[str]
    paths: Dict[str, Optional[str]]


class WebhookDestinationStatus(BaseModel):
    category: str
    url: Optional[str]
    configured: bool
    source: Optional[str]
