from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from bson import Decimal128, ObjectId
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field

ACCEPTED_STATUS = "accepted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _utc_isoformat(value: datetime) -> str:
    # pymongo hands back naive UTC unless the client is tz_aware
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def encode_document(document: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Turn a stored document into JSON-ready data without validating it.

    Documents are schema-on-read: whatever types the writer used are passed
    through. ObjectIds become strings and datetimes become UTC ISO strings.
    """
    return jsonable_encoder(
        dict(document),
        custom_encoder={ObjectId: str, Decimal128: str, datetime: _utc_isoformat},
    )


class StudentRecord(BaseModel):
    """
    Descriptive fields shared by every ID-card record.

    Every field is optional, unknown fields are kept as-is, and numbers sent
    for string fields are stored as strings.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    id: Optional[str] = Field(default=None, alias="_id")
    registerNumber: Optional[str] = None
    name: Optional[str] = None
    dob: Optional[str] = None
    department: Optional[str] = None
    year: Optional[str] = None
    section: Optional[str] = None
    libraryCode: Optional[str] = None
    reason: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        """Fields to write to the store; the id is left for the store to assign."""
        return self.model_dump(exclude={"id"})


# Read-side shapes. Listed documents are returned raw, so these only
# describe the expected fields in the OpenAPI schema.
class PrintRequest(StudentRecord):
    createdAt: Optional[datetime] = None


class AcceptanceHistory(StudentRecord):
    status: Optional[str] = None
    createdAt: Optional[datetime] = None


class AcceptedIdCard(StudentRecord):
    status: str = ACCEPTED_STATUS
    acceptedAt: datetime = Field(default_factory=utcnow)


class AcceptIdCardRequest(StudentRecord):
    """Body of POST /api/accept-idcard; defaults are applied by to_card()."""

    status: Optional[str] = None
    acceptedAt: Optional[datetime] = None

    def to_card(self) -> AcceptedIdCard:
        fields = self.model_dump(exclude={"id"}, exclude_none=True)
        return AcceptedIdCard.model_validate(fields)


class LoginRequest(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    adminId: Optional[str] = None


class LoginResult(BaseModel):
    success: bool
    message: Optional[str] = None


class AcceptResult(BaseModel):
    message: str
    data: AcceptedIdCard


class HealthStatus(BaseModel):
    ok: bool
    db: bool
