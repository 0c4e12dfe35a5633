"""
Pydantic models for ReadingBud documents and operation results.

Documents are validated here before they are written; references between
documents are stored as ObjectIds.
"""

import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from bson import ObjectId
from pydantic import BaseModel, Field, ValidationError, validator

from library.errors import InputValidationError

EMAIL_PATTERN = re.compile(r"^\w+([\.-]?\w+)*@\w+([\.-]?\w+)*(\.\w{2,3})+$")

IMAGE_FIELDS = ("image_path_S", "image_path_M", "image_path_L")

ModelT = TypeVar("ModelT", bound=BaseModel)


class Role(str, Enum):
    """User role enumeration."""
    USER = "user"
    ADMIN = "admin"


class Identity(BaseModel):
    """The authenticated caller, as carried in a token."""
    id: str = Field(..., description="User identifier")
    email: str = Field(..., description="User email")
    full_name: str = Field(..., description="User full name")
    role: Role = Field(Role.USER, description="User role")

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Identity":
        return cls(
            id=claims["id"],
            email=claims["email"],
            full_name=claims["full_name"],
            role=claims.get("role", Role.USER),
        )

    def to_claims(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "full_name": self.full_name,
            "id": self.id,
            "role": self.role.value,
        }


def _require_text(value: Any, label: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{label} is required")
    return str(value).strip()


class RegistrationData(BaseModel):
    """Registration input, normalised."""
    full_name: str
    email: str
    password: str

    @validator('full_name', pre=True)
    def validate_full_name(cls, v):
        return _require_text(v, "Full name")

    @validator('email', pre=True)
    def validate_email(cls, v):
        """Emails are trimmed, lower-cased and matched against a simple pattern."""
        email = _require_text(v, "Email").lower()
        if not EMAIL_PATTERN.match(email):
            raise ValueError("Please use a valid email address")
        return email

    @validator('password', pre=True)
    def validate_password(cls, v):
        if v is None or v == "":
            raise ValueError("Password is required")
        return str(v)


class UserDocument(BaseModel):
    full_name: str
    email: str
    password: str = Field(..., description="Password digest, never the plain text")
    role: Role = Role.USER
    reviews: List[ObjectId] = Field(default_factory=list)
    followers: List[ObjectId] = Field(default_factory=list)
    following: List[ObjectId] = Field(default_factory=list)
    collections: List[ObjectId] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        arbitrary_types_allowed = True
        use_enum_values = True


def parse_publishing_date(value: Any) -> datetime:
    """
    Parse a publishing date.

    A bare year (1965 or "1965") means January 1st of that year; anything
    else must be an ISO date or datetime.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, int):
        return datetime(value, 1, 1)
    text = _require_text(value, "Publishing date")
    if text.isdigit():
        return datetime(int(text), 1, 1)
    try:
        return datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        raise ValueError("Publishing date must be a year or an ISO date")


class BookDocument(BaseModel):
    title: str
    author: str
    publishing_date: datetime
    image_path_S: Optional[str] = None
    image_path_M: Optional[str] = None
    image_path_L: Optional[str] = None
    reviews: List[ObjectId] = Field(default_factory=list)
    collections: List[ObjectId] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        arbitrary_types_allowed = True

    @validator('title', pre=True)
    def validate_title(cls, v):
        return _require_text(v, "Title")

    @validator('author', pre=True)
    def validate_author(cls, v):
        return _require_text(v, "Author")

    @validator('publishing_date', pre=True)
    def validate_publishing_date(cls, v):
        return parse_publishing_date(v)


class BookChanges(BaseModel):
    """Partial update of a book; only fields that were sent are set."""
    title: Optional[str] = None
    author: Optional[str] = None
    publishing_date: Optional[datetime] = None

    @validator('title', pre=True)
    def validate_title(cls, v):
        return _require_text(v, "Title")

    @validator('author', pre=True)
    def validate_author(cls, v):
        return _require_text(v, "Author")

    @validator('publishing_date', pre=True)
    def validate_publishing_date(cls, v):
        return parse_publishing_date(v)


class ReviewDocument(BaseModel):
    title: str
    text: str
    rating: str = Field(..., description="Kept as an opaque string scalar")
    book: ObjectId
    user: ObjectId
    image_path: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        arbitrary_types_allowed = True

    @validator('title', pre=True)
    def validate_title(cls, v):
        return _require_text(v, "Title")

    @validator('text', pre=True)
    def validate_text(cls, v):
        return _require_text(v, "Description")

    @validator('rating', pre=True)
    def validate_rating(cls, v):
        return _require_text(v, "Rating")


class ReviewChanges(BaseModel):
    title: Optional[str] = None
    text: Optional[str] = None
    rating: Optional[str] = None

    @validator('title', pre=True)
    def validate_title(cls, v):
        return _require_text(v, "Title")

    @validator('text', pre=True)
    def validate_text(cls, v):
        return _require_text(v, "Description")

    @validator('rating', pre=True)
    def validate_rating(cls, v):
        return _require_text(v, "Rating")


class CollectionDocument(BaseModel):
    user: ObjectId
    name: str
    description: Optional[str] = None
    books: List[ObjectId] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        arbitrary_types_allowed = True

    @validator('name', pre=True)
    def validate_name(cls, v):
        return _require_text(v, "Name")


class CollectionChanges(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None

    @validator('name', pre=True)
    def validate_name(cls, v):
        return _require_text(v, "Name")


def validate_document(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    """
    Build a model, turning pydantic errors into an InputValidationError.

    The error details map each offending field to its message.
    """
    try:
        return model(**data)
    except ValidationError as e:
        errors = {}
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"]) or "body"
            errors[field] = error["msg"].replace("Value error, ", "")
        raise InputValidationError(
            "Validation failed: All required fields must be provided.",
            details=errors
        )


def reject_unknown_fields(updates: Dict[str, Any], allowed: List[str]) -> None:
    """Fail with the rejected field names when an update carries unexpected keys."""
    rejected = sorted(key for key in updates if key not in allowed)
    if rejected:
        raise InputValidationError(
            f"Invalid update fields: {', '.join(rejected)}. "
            f"Allowed fields are: {', '.join(allowed)}.",
            details={"rejected_fields": rejected}
        )


class CascadeReport(BaseModel):
    """Outcome of a cascade delete."""
    entity: str
    entity_id: str
    steps: List[str] = Field(default_factory=list)
    documents_touched: int = 0


class MembershipResult(BaseModel):
    """A collection write together with the book ids that were dropped."""
    collection: Dict[str, Any]
    dropped_book_ids: List[str] = Field(default_factory=list)


class ReconciliationResult(BaseModel):
    """Counts of references repaired by a reconciliation sweep."""
    dangling_references_removed: Dict[str, int] = Field(default_factory=dict)
    orphans_deleted: Dict[str, int] = Field(default_factory=dict)
    back_references_restored: Dict[str, int] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def total_repairs(self) -> int:
        return (
            sum(self.dangling_references_removed.values())
            + sum(self.orphans_deleted.values())
            + sum(self.back_references_restored.values())
        )
