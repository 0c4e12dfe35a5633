"""
API request and response schemas.

Request models only shape the body; field rules (required, trimmed, email
pattern) are enforced by the library so every violation surfaces as the
same 400 ValidationError.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, Field


class RegisterRequest(BaseModel):
    """Registration body."""
    full_name: Optional[str] = Field(None, description="User full name")
    email: Optional[str] = Field(None, description="User email")
    password: Optional[str] = Field(None, description="Plain-text password")


class LoginRequest(BaseModel):
    """Login body."""
    email: Optional[str] = Field(None, description="User email")
    password: Optional[str] = Field(None, description="Plain-text password")


class ReviewCreateRequest(BaseModel):
    """Review creation body."""
    book: Optional[str] = Field(None, description="Id of the reviewed book")
    title: Optional[str] = Field(None, description="Review title")
    text: Optional[str] = Field(None, description="Review text")
    rating: Optional[Union[str, int, float]] = Field(None, description="Rating, stored as a string")
    image_path: Optional[str] = Field(None, description="Optional image URL")

    def review_fields(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "text": self.text,
            "rating": self.rating,
            "image_path": self.image_path,
        }


class CollectionCreateRequest(BaseModel):
    """Collection creation body; book ids may be sent as bookIds or book_ids."""
    name: Optional[str] = Field(None, description="Collection name")
    description: Optional[str] = Field(None, description="Collection description")
    book_ids: Optional[List[Any]] = Field(
        None,
        validation_alias=AliasChoices("bookIds", "book_ids", "books"),
        description="Ids of the books to include"
    )


class BookMembershipRequest(BaseModel):
    """Body of add_book / remove_book."""
    book_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("bookId", "book_id"),
        description="Id of the book"
    )


class DataResponse(BaseModel):
    """Response carrying a message and a payload."""
    message: str = Field(..., description="Outcome message")
    data: Any = Field(None, description="Payload")


class TokenResponse(BaseModel):
    """Login response."""
    message: str = Field(..., description="Outcome message")
    token: str = Field(..., description="Signed bearer token")


class ErrorResponse(BaseModel):
    """Error response model."""
    message: str = Field(..., description="Error message")
    error: str = Field(..., description="Error kind")
    status_code: int = Field(..., description="HTTP status code")
    detail: Optional[Any] = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(..., description="Current timestamp")
    version: str = Field(..., description="API version")
    database_status: str = Field(..., description="Database connection status")
