"""
Reviews and their back-references on books and users.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError
import structlog

from library.cascade import CascadeDeleter
from library.database import MongoDBManager, serialize_document, to_object_id
from library.errors import DuplicateReviewError, NotFoundError, UnexpectedError
from library.models import (
    CascadeReport, Identity, ReviewChanges, ReviewDocument,
    reject_unknown_fields, validate_document
)
from library.permissions import require_login, require_owner_or_admin

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = ["title", "text", "rating"]


class ReviewService:
    """One review per (user, book), mirrored on Book.reviews and User.reviews."""

    def __init__(self, db_manager: MongoDBManager, cascade: CascadeDeleter):
        self.db = db_manager
        self.cascade = cascade

    async def load_review(self, review_id: Any) -> Dict[str, Any]:
        object_id = to_object_id(review_id, "review ID")
        review = await self.db.reviews.find_one({"_id": object_id})
        if not review:
            raise NotFoundError(f"Review with ID {review_id} not found.")
        return review

    async def list_reviews(self) -> List[Dict[str, Any]]:
        reviews = await self.db.find_many(self.db.reviews, {})
        await self.db.expand(reviews, "book", self.db.books, {"_id": 1, "title": 1, "author": 1})
        return serialize_document(reviews)

    async def get_review(self, review_id: Any) -> Dict[str, Any]:
        review = await self.load_review(review_id)
        await self.db.expand([review], "book", self.db.books, {"_id": 1, "title": 1, "author": 1})
        return serialize_document(review)

    async def create_review(
        self,
        identity: Optional[Identity],
        book_id: Any,
        fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Write a review, then push its id onto the book and the author.

        The two back-reference writes are issued together after the insert
        and are not transactional with it.

        Raises:
            NotFoundError: If the caller or the book does not exist
            DuplicateReviewError: If the caller already reviewed the book
        """
        identity = require_login(identity)
        user_id = to_object_id(identity.id, "user ID")
        book_object_id = to_object_id(book_id, "book ID")

        if not await self.db.users.find_one({"_id": user_id}, {"_id": 1}):
            raise NotFoundError("User not found. You cannot create a review.")
        if not await self.db.books.find_one({"_id": book_object_id}, {"_id": 1}):
            raise NotFoundError("Book not found. Review cannot be created for a non-existent book.")

        if await self.db.reviews.find_one({"book": book_object_id, "user": user_id}, {"_id": 1}):
            raise DuplicateReviewError(
                "You have already reviewed this book. Edit or delete your existing review first."
            )

        review = validate_document(ReviewDocument, {
            "title": fields.get("title"),
            "text": fields.get("text"),
            "rating": fields.get("rating"),
            "image_path": fields.get("image_path"),
            "book": book_object_id,
            "user": user_id,
        })
        document = review.model_dump()

        try:
            result = await self.db.reviews.insert_one(document)
        except DuplicateKeyError:
            raise DuplicateReviewError(
                "You have already reviewed this book. Edit or delete your existing review first."
            )
        document["_id"] = result.inserted_id

        try:
            await asyncio.gather(
                self.db.books.update_one({"_id": book_object_id}, {"$push": {"reviews": result.inserted_id}}),
                self.db.users.update_one({"_id": user_id}, {"$push": {"reviews": result.inserted_id}}),
            )
        except PyMongoError as e:
            logger.error("Failed to link review", review_id=str(result.inserted_id), error=str(e))
            raise UnexpectedError("Failed to add review to book and user")

        logger.info("Review created", review_id=str(result.inserted_id), book_id=str(book_object_id), user_id=identity.id)
        return serialize_document(document)

    async def update_review(
        self,
        identity: Optional[Identity],
        review_id: Any,
        updates: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Change title, text or rating; any other key is rejected."""
        identity = require_login(identity)
        reject_unknown_fields(updates, EDITABLE_FIELDS)

        review = await self.load_review(review_id)
        require_owner_or_admin(
            identity, review["user"],
            "update this review. You can only update your own reviews or must be an admin"
        )

        changes = validate_document(ReviewChanges, updates).model_dump(exclude_unset=True)
        changes["updated_at"] = datetime.utcnow()

        try:
            await self.db.reviews.update_one({"_id": review["_id"]}, {"$set": changes})
        except PyMongoError as e:
            logger.error("Failed to update review", review_id=str(review["_id"]), error=str(e))
            raise UnexpectedError("Error updating review.")

        updated = await self.db.reviews.find_one({"_id": review["_id"]})
        return serialize_document(updated)

    async def delete_review(self, identity: Optional[Identity], review_id: Any) -> CascadeReport:
        identity = require_login(identity)
        review = await self.load_review(review_id)
        require_owner_or_admin(
            identity, review["user"],
            "delete this review. You can only delete your own reviews or must be an admin"
        )
        return await self.cascade.delete_review(review, triggered_by=identity.id)
