"""
Pydantic schemas for the submission fan-out system.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# Enumerations
# ═══════════════════════════════════════════════════════════════════════════════


class Provider(str, Enum):
    """OAuth grant a Credential belongs to.  Drive shares the Sheets grant."""

    SHEETS = "sheets"
    CALENDAR = "calendar"


class DestinationKind(str, Enum):
    SHEETS = "sheets"
    CALENDAR = "calendar"
    DRIVE = "drive"
    EMAIL = "email"

    @property
    def credential_provider(self) -> Optional[Provider]:
        """The OAuth grant this destination needs (None for email)."""
        return {
            DestinationKind.SHEETS: Provider.SHEETS,
            DestinationKind.DRIVE: Provider.SHEETS,
            DestinationKind.CALENDAR: Provider.CALENDAR,
        }.get(self)


class DeliveryResult(str, Enum):
    DELIVERED = "delivered"
    SKIPPED_NO_CONNECTION = "skipped-no-connection"
    SKIPPED_NO_DATA = "skipped-no-data"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_PERMANENT = "failed-permanent"

    @property
    def is_failure(self) -> bool:
        return self in (DeliveryResult.FAILED_RETRYABLE, DeliveryResult.FAILED_PERMANENT)


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


# ═══════════════════════════════════════════════════════════════════════════════
# Credentials & connections
# ═══════════════════════════════════════════════════════════════════════════════


class Credential(BaseModel):
    """An OAuth access/refresh token pair for one user and one provider."""

    user_id: str
    provider: Provider
    access_token: str
    refresh_token: str = ""
    expires_at: datetime
    status: CredentialStatus = CredentialStatus.ACTIVE
    error_message: Optional[str] = None
    account_label: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.provider.value)

    def is_fresh(self, skew_seconds: int = 60, now: Optional[datetime] = None) -> bool:
        """True when the access token is usable for at least ``skew_seconds`` more."""
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=skew_seconds) < self.expires_at


class Connection(BaseModel):
    """A persisted binding from a form to one external resource."""

    id: str
    owner_user_id: str
    provider: DestinationKind
    external_id: str
    external_url: Optional[str] = None
    sheet_name: str = "Form Submissions"
    header_layout: List[str] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)


class ResolvedConnections(BaseModel):
    """Destinations configured for a form.  Any subset may be absent."""

    sheets: Optional[Connection] = None
    calendar: Optional[Connection] = None
    drive: Optional[Connection] = None

    def get(self, kind: DestinationKind) -> Optional[Connection]:
        return getattr(self, kind.value, None)

    def is_empty(self) -> bool:
        return not (self.sheets or self.calendar or self.drive)


class CreateSheetRequest(BaseModel):
    """New spreadsheet; with ``form_id`` its headers come from the form's labels."""

    title: str = Field(min_length=1, max_length=255)
    sheet_name: str = Field(default="Form Submissions", min_length=1, max_length=128)
    form_id: Optional[str] = None


class ConnectSheetRequest(BaseModel):
    spreadsheet_url: str
    sheet_name: Optional[str] = None
    form_id: Optional[str] = None


class ConnectionRequest(BaseModel):
    """Calendar or Drive folder target plus its per-connection settings."""

    provider: DestinationKind
    external_id: str = Field(min_length=1)
    external_url: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    form_id: Optional[str] = None


class CreateFolderRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    parent_id: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Forms & submissions
# ═══════════════════════════════════════════════════════════════════════════════


class FormConfig(BaseModel):
    id: str
    owner_user_id: str
    title: str
    field_labels: Dict[str, str] = Field(default_factory=dict)
    notification_emails: List[str] = Field(default_factory=list)
    notify_includes_files: bool = False

    def label_for(self, field_id: str) -> str:
        return self.field_labels.get(field_id) or field_id


class UploadedFile(BaseModel):
    field_id: str
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"


class Submission(BaseModel):
    id: str
    form_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processing_status: ProcessingStatus = ProcessingStatus.PENDING


class SubmissionRequest(BaseModel):
    """JSON body accepted by the intake endpoint."""

    payload: Dict[str, Any] = Field(default_factory=dict)


class SubmissionAccepted(BaseModel):
    submission_id: str
    status: ProcessingStatus = ProcessingStatus.PENDING


# ═══════════════════════════════════════════════════════════════════════════════
# Delivery
# ═══════════════════════════════════════════════════════════════════════════════


class DeliveryOutcome(BaseModel):
    """Result of one (submission, destination) attempt."""

    submission_id: str
    destination: DestinationKind
    result: DeliveryResult
    detail: str = ""
    error_kind: Optional[str] = None
    attempts: int = 0
    external_ref: Optional[str] = None
    links: List[Dict[str, str]] = Field(default_factory=list)


class DeliveryContext(BaseModel):
    """Everything a destination needs to deliver one submission."""

    model_config = {"arbitrary_types_allowed": True}

    submission: Submission
    form: FormConfig
    connection: Optional[Connection] = None
    files: List[UploadedFile] = Field(default_factory=list)
    # Outputs of destinations this one depends on, keyed by destination kind.
    upstream: Dict[str, DeliveryOutcome] = Field(default_factory=dict)


class DispatchReport(BaseModel):
    submission_id: str
    status: ProcessingStatus
    outcomes: List[DeliveryOutcome] = Field(default_factory=list)

    @property
    def partial_failure(self) -> bool:
        """Submission captured but at least one destination failed."""
        return any(o.result.is_failure for o in self.outcomes)

    def outcome_for(self, kind: DestinationKind) -> Optional[DeliveryOutcome]:
        for outcome in self.outcomes:
            if outcome.destination == kind:
                return outcome
        return None
