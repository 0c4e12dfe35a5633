"""
Repair sweep for back-references.

Writes are not transactional, so an interrupted cascade or a half-applied
paired update can leave dangling or one-sided references. The sweep treats
the owning side as the source of truth:

- Review.user / Review.book own User.reviews and Book.reviews
- Collection.user owns User.collections, Collection.books owns Book.collections
- User.following owns User.followers

Running it twice in a row makes no changes the second time.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List

import structlog
from motor.motor_asyncio import AsyncIOMotorCollection

from library.database import MongoDBManager
from library.models import ReconciliationResult

logger = structlog.get_logger(__name__)


class ReferenceReconciler:
    """Detects and repairs dangling and missing references."""

    def __init__(self, db_manager: MongoDBManager):
        self.db = db_manager
        self.logger = logger.bind(component="reference_reconciler")

    async def _delete_orphans(self, collection: AsyncIOMotorCollection, query: Dict[str, Any]) -> int:
        result = await collection.delete_many(query)
        return result.deleted_count

    async def _sync(
        self,
        collection: AsyncIOMotorCollection,
        label: str,
        document: Dict[str, Any],
        field: str,
        expected: Iterable[Any],
        result: ReconciliationResult
    ) -> None:
        """Make document[field] hold exactly the expected ids, keeping existing order."""
        current = document.get(field, []) or []
        expected = list(dict.fromkeys(expected))
        expected_set = set(expected)
        current_set = set(current)

        stale = [value for value in current if value not in expected_set]
        missing = [value for value in expected if value not in current_set]
        key = f"{label}.{field}"

        if stale:
            await collection.update_one({"_id": document["_id"]}, {"$pullAll": {field: stale}})
            result.dangling_references_removed[key] = result.dangling_references_removed.get(key, 0) + len(stale)
            self.logger.info("Removed dangling references", field=key, document_id=str(document["_id"]), count=len(stale))

        if missing:
            await collection.update_one({"_id": document["_id"]}, {"$addToSet": {field: {"$each": missing}}})
            result.back_references_restored[key] = result.back_references_restored.get(key, 0) + len(missing)
            self.logger.info("Restored back-references", field=key, document_id=str(document["_id"]), count=len(missing))

    async def run(self) -> ReconciliationResult:
        """
        Run one full sweep.

        Returns:
            ReconciliationResult with counts per repaired field
        """
        result = ReconciliationResult()

        users = await self.db.find_many(
            self.db.users, {},
            {"_id": 1, "reviews": 1, "collections": 1, "followers": 1, "following": 1}
        )
        books = await self.db.find_many(self.db.books, {}, {"_id": 1, "reviews": 1, "collections": 1})
        user_ids = [user["_id"] for user in users]
        book_ids = [book["_id"] for book in books]
        known_users = set(user_ids)
        known_books = set(book_ids)

        result.orphans_deleted["reviews"] = await self._delete_orphans(
            self.db.reviews,
            {"$or": [{"user": {"$nin": user_ids}}, {"book": {"$nin": book_ids}}]}
        )
        result.orphans_deleted["collections"] = await self._delete_orphans(
            self.db.collections, {"user": {"$nin": user_ids}}
        )

        reviews = await self.db.find_many(self.db.reviews, {}, {"_id": 1, "user": 1, "book": 1})
        collections = await self.db.find_many(self.db.collections, {}, {"_id": 1, "user": 1, "books": 1})

        user_reviews: Dict[Any, List[Any]] = defaultdict(list)
        book_reviews: Dict[Any, List[Any]] = defaultdict(list)
        for review in reviews:
            user_reviews[review["user"]].append(review["_id"])
            book_reviews[review["book"]].append(review["_id"])

        user_collections: Dict[Any, List[Any]] = defaultdict(list)
        book_collections: Dict[Any, List[Any]] = defaultdict(list)
        for collection in collections:
            user_collections[collection["user"]].append(collection["_id"])
            for book_id in collection.get("books", []) or []:
                if book_id in known_books:
                    book_collections[book_id].append(collection["_id"])

        followers: Dict[Any, List[Any]] = defaultdict(list)
        following: Dict[Any, List[Any]] = {}
        for user in users:
            valid = [
                target for target in user.get("following", []) or []
                if target in known_users and target != user["_id"]
            ]
            following[user["_id"]] = valid
            for target in valid:
                followers[target].append(user["_id"])

        for user in users:
            await self._sync(self.db.users, "users", user, "reviews", user_reviews[user["_id"]], result)
            await self._sync(self.db.users, "users", user, "collections", user_collections[user["_id"]], result)
            await self._sync(self.db.users, "users", user, "following", following[user["_id"]], result)
            await self._sync(self.db.users, "users", user, "followers", followers[user["_id"]], result)

        for book in books:
            await self._sync(self.db.books, "books", book, "reviews", book_reviews[book["_id"]], result)
            await self._sync(self.db.books, "books", book, "collections", book_collections[book["_id"]], result)

        for collection in collections:
            members = [book_id for book_id in collection.get("books", []) or [] if book_id in known_books]
            await self._sync(self.db.collections, "collections", collection, "books", members, result)

        result.finished_at = datetime.utcnow()
        if result.total_repairs > 0:
            self.logger.info("Reconciliation completed", repairs=result.total_repairs)
        else:
            self.logger.debug("No inconsistent references found")
        return result
