"""
Cascade deletes.

Every delete prunes the back-references other documents hold to the
removed entity. Steps are independent writes; a failing step aborts the
cascade with an UnexpectedError naming it, and completed steps stay applied.
"""

import asyncio
from typing import Any, Awaitable, Dict, Optional

from bson import ObjectId
from pymongo.errors import PyMongoError

from library.database import MongoDBManager
from library.errors import UnexpectedError
from library.models import IMAGE_FIELDS, CascadeReport
from library.uploads import ImageStore
from utilities.logger import CascadeLogger


def _count_touched(result: Any) -> int:
    if result is None:
        return 0
    if isinstance(result, (list, tuple)):
        return sum(_count_touched(item) for item in result)
    if hasattr(result, "deleted_count"):
        return result.deleted_count
    if hasattr(result, "modified_count"):
        return result.modified_count
    return 0


class CascadeDeleter:
    """Runs the delete protocol for users, books, reviews and collections."""

    def __init__(self, db_manager: MongoDBManager, image_store: Optional[ImageStore] = None):
        self.db = db_manager
        self.image_store = image_store

    async def _run_step(
        self,
        report: CascadeReport,
        cascade_logger: CascadeLogger,
        step: str,
        awaitable: Awaitable
    ) -> Any:
        try:
            result = await awaitable
        except PyMongoError as e:
            cascade_logger.log_step_failed(step, str(e), len(report.steps))
            raise UnexpectedError(
                f"Failed to {step}",
                details={"completed_steps": list(report.steps)}
            )

        touched = _count_touched(result)
        report.steps.append(step)
        report.documents_touched += touched
        cascade_logger.log_step(step, touched)
        return result

    def _start(self, entity: str, entity_id: ObjectId, triggered_by: Optional[str]):
        report = CascadeReport(entity=entity, entity_id=str(entity_id))
        cascade_logger = CascadeLogger(entity, str(entity_id)).bind_context(triggered_by=triggered_by)
        cascade_logger.log_start()
        return report, cascade_logger

    async def delete_user(self, user: Dict[str, Any], triggered_by: Optional[str] = None) -> CascadeReport:
        """
        Delete a user with their reviews and collections.

        Args:
            user: The user document
            triggered_by: Id of the caller, for the log

        Returns:
            CascadeReport
        """
        user_id = user["_id"]
        report, cascade_logger = self._start("user", user_id, triggered_by)

        reviews = await self.db.find_many(self.db.reviews, {"user": user_id}, {"_id": 1})
        review_ids = [review["_id"] for review in reviews]

        await self._run_step(
            report, cascade_logger, "remove user reviews from books",
            self.db.books.update_many(
                {"reviews": {"$in": review_ids}},
                {"$pullAll": {"reviews": review_ids}}
            )
        )
        await self._run_step(
            report, cascade_logger, "delete user reviews",
            self.db.reviews.delete_many({"user": user_id})
        )

        owned = await self.db.find_many(self.db.collections, {"user": user_id}, {"_id": 1})
        collection_ids = list({*user.get("collections", []), *(doc["_id"] for doc in owned)})

        await self._run_step(
            report, cascade_logger, "remove user collections from books",
            self.db.books.update_many(
                {"collections": {"$in": collection_ids}},
                {"$pullAll": {"collections": collection_ids}}
            )
        )
        await self._run_step(
            report, cascade_logger, "delete user collections",
            self.db.collections.delete_many(
                {"$or": [{"_id": {"$in": collection_ids}}, {"user": user_id}]}
            )
        )
        await self._run_step(
            report, cascade_logger, "remove user from followers and following",
            asyncio.gather(
                self.db.users.update_many({"following": user_id}, {"$pull": {"following": user_id}}),
                self.db.users.update_many({"followers": user_id}, {"$pull": {"followers": user_id}}),
            )
        )
        await self._run_step(
            report, cascade_logger, "delete user",
            self.db.users.delete_one({"_id": user_id})
        )

        cascade_logger.log_complete(len(report.steps), report.documents_touched)
        return report

    async def delete_book(self, book: Dict[str, Any], triggered_by: Optional[str] = None) -> CascadeReport:
        """Delete a book, its reviews, its images and its collection memberships."""
        book_id = book["_id"]
        report, cascade_logger = self._start("book", book_id, triggered_by)

        await self._run_step(
            report, cascade_logger, "remove book from collections",
            self.db.collections.update_many({"books": book_id}, {"$pull": {"books": book_id}})
        )

        reviews = await self.db.find_many(self.db.reviews, {"book": book_id}, {"_id": 1})
        review_ids = [review["_id"] for review in reviews]

        await self._run_step(
            report, cascade_logger, "remove book reviews from users",
            self.db.users.update_many(
                {"reviews": {"$in": review_ids}},
                {"$pullAll": {"reviews": review_ids}}
            )
        )
        await self._run_step(
            report, cascade_logger, "delete book reviews",
            self.db.reviews.delete_many({"book": book_id})
        )

        if self.image_store:
            removed = self.image_store.delete_all(book.get(field) for field in IMAGE_FIELDS)
            report.steps.append("delete book images")
            cascade_logger.log_step("delete book images", len(removed))

        await self._run_step(
            report, cascade_logger, "delete book",
            self.db.books.delete_one({"_id": book_id})
        )

        cascade_logger.log_complete(len(report.steps), report.documents_touched)
        return report

    async def delete_collection(
        self,
        collection: Dict[str, Any],
        triggered_by: Optional[str] = None
    ) -> CascadeReport:
        """Delete a collection and remove it from its owner and its books."""
        collection_id = collection["_id"]
        report, cascade_logger = self._start("collection", collection_id, triggered_by)

        await self._run_step(
            report, cascade_logger, "remove collection from owner",
            self.db.users.update_one(
                {"_id": collection["user"]},
                {"$pull": {"collections": collection_id}}
            )
        )
        await self._run_step(
            report, cascade_logger, "remove collection from books",
            self.db.books.update_many(
                {"collections": collection_id},
                {"$pull": {"collections": collection_id}}
            )
        )
        await self._run_step(
            report, cascade_logger, "delete collection",
            self.db.collections.delete_one({"_id": collection_id})
        )

        cascade_logger.log_complete(len(report.steps), report.documents_touched)
        return report

    async def delete_review(self, review: Dict[str, Any], triggered_by: Optional[str] = None) -> CascadeReport:
        """Delete a review; the three writes are issued together."""
        review_id = review["_id"]
        report, cascade_logger = self._start("review", review_id, triggered_by)

        await self._run_step(
            report, cascade_logger, "delete review and its back-references",
            asyncio.gather(
                self.db.books.update_one({"_id": review["book"]}, {"$pull": {"reviews": review_id}}),
                self.db.users.update_one({"_id": review["user"]}, {"$pull": {"reviews": review_id}}),
                self.db.reviews.delete_one({"_id": review_id}),
            )
        )

        cascade_logger.log_complete(len(report.steps), report.documents_touched)
        return report

