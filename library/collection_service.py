"""
User-curated book collections.

A collection's `books` and each member book's `collections` mirror each
other; every write here updates both sides.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import PyMongoError
import structlog

from library.cascade import CascadeDeleter
from library.database import (
    MongoDBManager, contains_id, serialize_document, to_object_id, try_object_id
)
from library.errors import (
    AlreadyPresentError, InputValidationError, LimitExceededError,
    NotFoundError, NotPresentError, UnexpectedError
)
from library.models import (
    CascadeReport, CollectionChanges, CollectionDocument, Identity,
    MembershipResult, reject_unknown_fields, validate_document
)
from library.permissions import require_login, require_owner_or_admin

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = ["name", "description", "books"]


class CollectionService:
    """Collections capped per user, with silent drop of unknown book ids."""

    def __init__(self, db_manager: MongoDBManager, cascade: CascadeDeleter, max_collections: int = 5):
        self.db = db_manager
        self.cascade = cascade
        self.max_collections = max_collections

    async def load_collection(self, collection_id: Any) -> Dict[str, Any]:
        object_id = to_object_id(collection_id, "collection ID")
        collection = await self.db.collections.find_one({"_id": object_id})
        if not collection:
            raise NotFoundError(f"Collection with id {collection_id} not found")
        return collection

    async def _load_book(self, book_id: Any) -> Dict[str, Any]:
        object_id = to_object_id(book_id, "book ID")
        book = await self.db.books.find_one({"_id": object_id}, {"_id": 1, "collections": 1})
        if not book:
            raise NotFoundError(f"Book with id {book_id} not found")
        return book

    async def _expand(self, collections: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        await self.db.expand(collections, "books", self.db.books, {"_id": 1, "title": 1, "author": 1})
        await self.db.expand(collections, "user", self.db.users, {"_id": 1, "full_name": 1})
        return collections

    async def list_collections(self) -> List[Dict[str, Any]]:
        collections = await self.db.find_many(self.db.collections, {})
        return serialize_document(await self._expand(collections))

    async def get_collection(self, collection_id: Any) -> Dict[str, Any]:
        collection = await self.load_collection(collection_id)
        expanded = await self._expand([collection])
        return serialize_document(expanded[0])

    async def _resolve_books(self, book_ids: Optional[Iterable[Any]]) -> Tuple[List[ObjectId], List[str]]:
        """
        Split requested book ids into existing ones and dropped ones.

        Malformed and unknown ids are dropped rather than failing the
        request; duplicates are collapsed.
        """
        if book_ids is None:
            return [], []
        if isinstance(book_ids, (str, bytes)) or not isinstance(book_ids, (list, tuple, set)):
            raise InputValidationError("books must be a list of book ids")

        candidates: List[ObjectId] = []
        dropped: List[str] = []
        for raw in book_ids:
            object_id = try_object_id(raw)
            if object_id is None:
                dropped.append(str(raw))
            elif object_id not in candidates:
                candidates.append(object_id)

        existing = await self.db.find_existing_ids(self.db.books, candidates)
        dropped.extend(str(object_id) for object_id in candidates if object_id not in existing)

        if dropped:
            logger.warning("Dropped unknown book ids", dropped=dropped)
        return existing, dropped

    async def create_collection(
        self,
        identity: Optional[Identity],
        name: Any,
        book_ids: Optional[Iterable[Any]] = None,
        description: Optional[str] = None
    ) -> MembershipResult:
        """
        Create a collection for the caller.

        Raises:
            NotFoundError: If the caller's account no longer exists
            LimitExceededError: If the caller already owns the maximum number of collections
        """
        identity = require_login(identity)
        user_id = to_object_id(identity.id, "user ID")

        user = await self.db.users.find_one({"_id": user_id}, {"_id": 1, "collections": 1})
        if not user:
            raise NotFoundError("User not found")
        if len(user.get("collections", [])) >= self.max_collections:
            raise LimitExceededError(f"You can only create up to {self.max_collections} collections.")

        books, dropped = await self._resolve_books(book_ids)
        collection = validate_document(CollectionDocument, {
            "user": user_id,
            "name": name,
            "description": description,
            "books": books,
        })
        document = collection.model_dump()

        try:
            result = await self.db.collections.insert_one(document)
        except PyMongoError as e:
            logger.error("Failed to insert collection", user_id=identity.id, error=str(e))
            raise UnexpectedError("Error creating collection")
        document["_id"] = result.inserted_id

        try:
            await asyncio.gather(
                self.db.users.update_one({"_id": user_id}, {"$push": {"collections": result.inserted_id}}),
                self.db.books.update_many({"_id": {"$in": books}}, {"$addToSet": {"collections": result.inserted_id}}),
            )
        except PyMongoError as e:
            logger.error("Failed to link collection", collection_id=str(result.inserted_id), error=str(e))
            raise UnexpectedError("Failed to add collection to user and books")

        logger.info("Collection created", collection_id=str(result.inserted_id), user_id=identity.id, books=len(books))
        return MembershipResult(collection=serialize_document(document), dropped_book_ids=dropped)

    async def update_collection(
        self,
        identity: Optional[Identity],
        collection_id: Any,
        updates: Dict[str, Any]
    ) -> MembershipResult:
        """
        Update name, description or books.

        When books are replaced, the collection id is added to newly listed
        books and removed from books no longer listed.
        """
        identity = require_login(identity)
        reject_unknown_fields(updates, EDITABLE_FIELDS)

        collection = await self.load_collection(collection_id)
        require_owner_or_admin(identity, collection["user"], "update this collection")

        scalar_updates = {key: value for key, value in updates.items() if key != "books"}
        changes = validate_document(CollectionChanges, scalar_updates).model_dump(exclude_unset=True)

        dropped: List[str] = []
        added: List[ObjectId] = []
        removed: List[ObjectId] = []
        if "books" in updates:
            books, dropped = await self._resolve_books(updates["books"])
            previous = collection.get("books", [])
            added = [book_id for book_id in books if book_id not in previous]
            removed = [book_id for book_id in previous if book_id not in books]
            changes["books"] = books

        changes["updated_at"] = datetime.utcnow()
        try:
            await self.db.collections.update_one({"_id": collection["_id"]}, {"$set": changes})
            await asyncio.gather(
                self.db.books.update_many({"_id": {"$in": added}}, {"$addToSet": {"collections": collection["_id"]}}),
                self.db.books.update_many({"_id": {"$in": removed}}, {"$pull": {"collections": collection["_id"]}}),
            )
        except PyMongoError as e:
            logger.error("Failed to update collection", collection_id=str(collection["_id"]), error=str(e))
            raise UnexpectedError("Error updating collection")

        updated = await self.db.collections.find_one({"_id": collection["_id"]})
        return MembershipResult(collection=serialize_document(updated), dropped_book_ids=dropped)

    async def add_book(self, identity: Optional[Identity], collection_id: Any, book_id: Any) -> Dict[str, Any]:
        """Add a book to a collection and the collection to the book."""
        identity = require_login(identity)
        collection = await self.load_collection(collection_id)
        require_owner_or_admin(identity, collection["user"], "add a book to this collection")

        book = await self._load_book(book_id)
        if contains_id(collection.get("books", []), book["_id"]):
            raise AlreadyPresentError(f"Book with id {book_id} is already in the collection")

        try:
            await self.db.collections.update_one(
                {"_id": collection["_id"]},
                {"$addToSet": {"books": book["_id"]}, "$set": {"updated_at": datetime.utcnow()}}
            )
            if not contains_id(book.get("collections", []), collection["_id"]):
                await self.db.books.update_one(
                    {"_id": book["_id"]},
                    {"$addToSet": {"collections": collection["_id"]}}
                )
        except PyMongoError as e:
            logger.error("Failed to add book to collection", collection_id=str(collection["_id"]), error=str(e))
            raise UnexpectedError("Error adding book to collection")

        logger.info("Book added to collection", collection_id=str(collection["_id"]), book_id=str(book["_id"]))
        return await self.get_collection(collection["_id"])

    async def remove_book(self, identity: Optional[Identity], collection_id: Any, book_id: Any) -> Dict[str, Any]:
        """Remove a book from a collection and the collection from the book."""
        identity = require_login(identity)
        collection = await self.load_collection(collection_id)
        require_owner_or_admin(identity, collection["user"], "remove a book from this collection")

        book = await self._load_book(book_id)
        if not contains_id(collection.get("books", []), book["_id"]):
            raise NotPresentError(f"Book with id {book_id} is not in the collection")

        try:
            await self.db.collections.update_one(
                {"_id": collection["_id"]},
                {"$pull": {"books": book["_id"]}, "$set": {"updated_at": datetime.utcnow()}}
            )
            await self.db.books.update_one(
                {"_id": book["_id"]},
                {"$pull": {"collections": collection["_id"]}}
            )
        except PyMongoError as e:
            logger.error("Failed to remove book from collection", collection_id=str(collection["_id"]), error=str(e))
            raise UnexpectedError("Error removing book from collection")

        logger.info("Book removed from collection", collection_id=str(collection["_id"]), book_id=str(book["_id"]))
        return await self.get_collection(collection["_id"])

    async def delete_collection(self, identity: Optional[Identity], collection_id: Any) -> CascadeReport:
        identity = require_login(identity)
        collection = await self.load_collection(collection_id)
        require_owner_or_admin(identity, collection["user"], "delete this collection")
        return await self.cascade.delete_collection(collection, triggered_by=identity.id)
