"""
Book catalog operations.

Writes are admin-only. Image attributes hold an uploaded file path or an
external URL; uploaded files are cleaned up whenever the write they belong
to fails, and replaced files are deleted once the update is committed.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError
import structlog

from library.cascade import CascadeDeleter
from library.database import MongoDBManager, serialize_document, to_object_id
from library.errors import InputValidationError, NotFoundError, UnexpectedError
from library.models import (
    IMAGE_FIELDS, BookChanges, BookDocument, CascadeReport, Identity,
    reject_unknown_fields, validate_document
)
from library.permissions import require_admin
from library.uploads import ImageStore

logger = structlog.get_logger(__name__)

BOOK_FIELDS = ["title", "author", "publishing_date"]
IMAGE_URL_FIELDS = {field: field.replace("image_path_", "image_url_") for field in IMAGE_FIELDS}
UPDATABLE_FIELDS = BOOK_FIELDS + list(IMAGE_FIELDS) + list(IMAGE_URL_FIELDS.values())


def _image_urls(fields: Dict[str, Any]) -> Dict[str, str]:
    """
    Collect external image URLs keyed by image attribute.

    image_path_S/M/L only take uploaded files, and image_url_S/M/L must be
    http(s) URLs.

    Raises:
        InputValidationError: Naming every offending field
    """
    errors = {}
    urls = {}
    for field, url_field in IMAGE_URL_FIELDS.items():
        if fields.get(field):
            errors[field] = "Must be an uploaded image file"
        url = fields.get(url_field)
        if not url:
            continue
        if not isinstance(url, str) or not ImageStore.is_external(url):
            errors[url_field] = "Must be an http(s) URL"
        else:
            urls[field] = url
    if errors:
        raise InputValidationError("Invalid book images", details=errors)
    return urls


def _image_value(field: str, stored: Dict[str, str], urls: Dict[str, str]) -> Optional[str]:
    """An uploaded file wins over a URL given for the same size."""
    return stored.get(field) or urls.get(field)


class BookService:
    """Create, read, update and delete books."""

    def __init__(self, db_manager: MongoDBManager, image_store: ImageStore, cascade: CascadeDeleter):
        self.db = db_manager
        self.images = image_store
        self.cascade = cascade

    async def load_book(self, book_id: Any) -> Dict[str, Any]:
        object_id = to_object_id(book_id, "book ID")
        book = await self.db.books.find_one({"_id": object_id})
        if not book:
            raise NotFoundError(f"Book with id {book_id} was not found")
        return book

    async def _expand(self, books: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        await self.db.expand(books, "reviews", self.db.reviews, {"_id": 1, "rating": 1, "title": 1, "user": 1})
        await self.db.expand(books, "collections", self.db.collections, {"_id": 1, "name": 1})
        return books

    async def list_books(self) -> List[Dict[str, Any]]:
        books = await self.db.find_many(self.db.books, {})
        return serialize_document(await self._expand(books))

    async def get_book(self, book_id: Any) -> Dict[str, Any]:
        book = await self.load_book(book_id)
        expanded = await self._expand([book])
        return serialize_document(expanded[0])

    async def create_book(
        self,
        identity: Optional[Identity],
        fields: Dict[str, Any],
        images: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Create a book.

        Args:
            identity: The caller; must be an admin
            fields: title, author, publishing_date and optional image_url_S/M/L
            images: Uploaded files keyed by image_path_S/M/L

        Raises:
            InputValidationError: On missing fields or non-image uploads; stored uploads are removed first
        """
        require_admin(identity)
        urls = _image_urls(fields)
        stored = await self.images.save_all(images or {})

        data = {field: fields.get(field) for field in BOOK_FIELDS}
        for field in IMAGE_FIELDS:
            data[field] = _image_value(field, stored, urls)

        try:
            book = validate_document(BookDocument, data)
        except InputValidationError:
            self.images.delete_all(stored.values())
            raise

        document = book.model_dump()
        try:
            result = await self.db.books.insert_one(document)
        except PyMongoError as e:
            logger.error("Failed to insert book", title=book.title, error=str(e))
            self.images.delete_all(stored.values())
            raise UnexpectedError("Error creating book")

        document["_id"] = result.inserted_id
        logger.info("Book created", book_id=str(result.inserted_id), title=book.title)
        return serialize_document(document)

    async def update_book(
        self,
        identity: Optional[Identity],
        book_id: Any,
        fields: Dict[str, Any],
        images: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Update a book.

        Replaced uploaded images are deleted after the new values are
        committed. Every collection listed on the book is then re-asserted to
        contain it.
        """
        require_admin(identity)
        reject_unknown_fields(fields, UPDATABLE_FIELDS)
        urls = _image_urls(fields)
        book = await self.load_book(book_id)

        stored = await self.images.save_all(images or {})
        provided = {field: fields[field] for field in BOOK_FIELDS if field in fields}
        try:
            changes = validate_document(BookChanges, provided).model_dump(exclude_unset=True)
        except InputValidationError:
            self.images.delete_all(stored.values())
            raise

        replaced = []
        for field in IMAGE_FIELDS:
            new_value = _image_value(field, stored, urls)
            if new_value:
                changes[field] = new_value
                if book.get(field) and book[field] != new_value:
                    replaced.append(book[field])

        now = datetime.utcnow()
        changes["updated_at"] = now
        try:
            await self.db.books.update_one({"_id": book["_id"]}, {"$set": changes})
        except PyMongoError as e:
            logger.error("Failed to update book", book_id=str(book["_id"]), error=str(e))
            self.images.delete_all(stored.values())
            raise UnexpectedError("An error occurred while updating the book")

        self.images.delete_all(replaced)

        if book.get("collections"):
            try:
                await self.db.collections.update_many(
                    {"_id": {"$in": book["collections"]}},
                    {"$addToSet": {"books": book["_id"]}, "$set": {"updated_at": now}}
                )
            except PyMongoError as e:
                logger.error("Failed to refresh book in collections", book_id=str(book["_id"]), error=str(e))
                raise UnexpectedError("Failed to update book in its collections")

        logger.info("Book updated", book_id=str(book["_id"]), fields=sorted(changes))
        updated = await self.db.books.find_one({"_id": book["_id"]})
        return serialize_document(updated)

    async def delete_book(self, identity: Optional[Identity], book_id: Any) -> CascadeReport:
        identity = require_admin(identity)
        book = await self.load_book(book_id)
        return await self.cascade.delete_book(book, triggered_by=identity.id)
