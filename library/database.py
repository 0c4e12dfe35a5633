"""
MongoDB database utilities for async operations.
Handles connection, indexing, id handling and reference expansion for the
users, books, reviews and collections collections.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure
import structlog

from library.errors import InputValidationError

logger = structlog.get_logger(__name__)

USER_PUBLIC_PROJECTION = {"password": 0}


def to_object_id(value: Any, label: str = "id") -> ObjectId:
    """
    Convert a client supplied identifier to an ObjectId.

    Args:
        value: Identifier as received
        label: Name used in the error message

    Returns:
        ObjectId

    Raises:
        InputValidationError: If the value is not a valid ObjectId
    """
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise InputValidationError(f"Invalid {label}: {value}")


def try_object_id(value: Any) -> Optional[ObjectId]:
    """Convert to ObjectId, or None if the value has the wrong shape."""
    try:
        return to_object_id(value)
    except InputValidationError:
        return None


def contains_id(ids: Iterable[Any], target: ObjectId) -> bool:
    return any(str(item) == str(target) for item in ids)


def serialize_document(value: Any) -> Any:
    """
    Convert a MongoDB document into JSON-compatible data.

    `_id` becomes `id`, ObjectIds become strings and datetimes become ISO
    strings, recursively.
    """
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if key == "_id":
                result["id"] = serialize_document(item)
            else:
                result[key] = serialize_document(item)
        return result
    if isinstance(value, list):
        return [serialize_document(item) for item in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class MongoDBManager:
    """
    Async MongoDB manager for the ReadingBud collections.
    Handles connection, indexing and the expand (join) capability.
    """

    def __init__(self, connection_url: str, database_name: str):
        """
        Initialize MongoDB manager.

        Args:
            connection_url: MongoDB connection URL
            database_name: Name of the database
        """
        self.connection_url = connection_url
        self.database_name = database_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None

    async def connect(self, client: Optional[AsyncIOMotorClient] = None) -> None:
        """
        Establish connection to MongoDB.

        Args:
            client: An already constructed client; when given, the ping is skipped
        """
        try:
            if client is None:
                self.client = AsyncIOMotorClient(self.connection_url)
                await self.client.admin.command('ping')
            else:
                self.client = client
            self.database = self.client[self.database_name]

            logger.info("Successfully connected to MongoDB", database=self.database_name)

            await self._create_indexes()

        except ConnectionFailure as e:
            logger.error("Failed to connect to MongoDB", error=str(e))
            raise

    async def disconnect(self) -> None:
        """Close MongoDB connection."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

    @property
    def users(self) -> AsyncIOMotorCollection:
        return self.database.users

    @property
    def books(self) -> AsyncIOMotorCollection:
        return self.database.books

    @property
    def reviews(self) -> AsyncIOMotorCollection:
        return self.database.reviews

    @property
    def collections(self) -> AsyncIOMotorCollection:
        return self.database.collections

    async def _create_indexes(self) -> None:
        """
        Create the indexes backing uniqueness rules and back-reference lookups.
        """
        try:
            # One account per email, one review per (user, book)
            await self.users.create_index("email", unique=True)
            await self.reviews.create_index([("user", 1), ("book", 1)], unique=True)

            await self.reviews.create_index("book")
            await self.collections.create_index("user")
            await self.books.create_index("collections")
            await self.users.create_index("followers")
            await self.users.create_index("following")

            logger.info("Successfully created MongoDB indexes")

        except Exception as e:
            logger.error("Failed to create indexes", error=str(e))
            raise

    async def find_many(
        self,
        collection: AsyncIOMotorCollection,
        query: Dict[str, Any],
        projection: Optional[Dict[str, int]] = None
    ) -> List[Dict[str, Any]]:
        cursor = collection.find(query, projection)
        return await cursor.to_list(length=None)

    async def find_existing_ids(
        self,
        collection: AsyncIOMotorCollection,
        ids: Iterable[ObjectId]
    ) -> List[ObjectId]:
        """Return the subset of ids that resolve to documents, in input order."""
        ids = list(ids)
        if not ids:
            return []
        docs = await self.find_many(collection, {"_id": {"$in": ids}}, {"_id": 1})
        found = {doc["_id"] for doc in docs}
        return [object_id for object_id in ids if object_id in found]

    async def expand(
        self,
        docs: List[Dict[str, Any]],
        field: str,
        collection: AsyncIOMotorCollection,
        projection: Optional[Dict[str, int]] = None
    ) -> List[Dict[str, Any]]:
        """
        Replace a reference field with the referenced documents.

        The field may hold a single id or a list of ids. List order is kept
        and ids that no longer resolve are left out; a dangling single
        reference becomes None.

        Args:
            docs: Documents to expand in place
            field: Name of the reference field
            collection: Collection the references point into
            projection: Fields of the referenced documents to keep

        Returns:
            The same documents, expanded
        """
        wanted = set()
        for doc in docs:
            value = doc.get(field)
            if isinstance(value, list):
                wanted.update(value)
            elif value is not None:
                wanted.add(value)

        if not wanted:
            return docs

        referenced = await self.find_many(collection, {"_id": {"$in": list(wanted)}}, projection)
        by_id = {ref["_id"]: ref for ref in referenced}

        for doc in docs:
            value = doc.get(field)
            if isinstance(value, list):
                doc[field] = [by_id[ref_id] for ref_id in value if ref_id in by_id]
            elif value is not None:
                doc[field] = by_id.get(value)

        return docs

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform database health check.

        Returns:
            Dictionary with health status
        """
        try:
            await self.database.command("ping")
            return {"status": "healthy", **await self.get_database_stats()}
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {
                "status": "unhealthy",
                "error": str(e)
            }

    async def get_database_stats(self) -> Dict[str, Any]:
        """Get document counts for monitoring."""
        return {
            "users": await self.users.count_documents({}),
            "books": await self.books.count_documents({}),
            "reviews": await self.reviews.count_documents({}),
            "collections": await self.collections.count_documents({}),
        }
