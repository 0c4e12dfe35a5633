"""
User accounts, credentials and the follower graph.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError
import structlog

from library.cascade import CascadeDeleter
from library.database import (
    USER_PUBLIC_PROJECTION, MongoDBManager, contains_id, serialize_document, to_object_id
)
from library.errors import (
    AlreadyFollowingError, DuplicateEmailError, InvalidCredentialsError,
    InvalidOperationError, NotFollowingError, NotFoundError, UnexpectedError
)
from library.models import (
    CascadeReport, Identity, RegistrationData, Role, UserDocument, validate_document
)
from library.permissions import require_admin, require_login

logger = structlog.get_logger(__name__)


class UserService:
    """Registration, login, reads, follow/unfollow and account deletion."""

    def __init__(self, db_manager: MongoDBManager, passwords, tokens, cascade: CascadeDeleter):
        """
        Args:
            db_manager: Connected database manager
            passwords: Object with hash(plain) and verify(plain, digest)
            tokens: Object with sign(claims)
            cascade: Cascade orchestrator used for account deletion
        """
        self.db = db_manager
        self.passwords = passwords
        self.tokens = tokens
        self.cascade = cascade

    async def register(self, full_name: Any, email: Any, password: Any) -> Dict[str, Any]:
        """
        Create an account.

        Returns:
            The new user without its password digest

        Raises:
            InputValidationError: If a field is missing or malformed
            DuplicateEmailError: If the email is already registered
        """
        data = validate_document(
            RegistrationData,
            {"full_name": full_name, "email": email, "password": password}
        )

        if await self.db.users.find_one({"email": data.email}, {"_id": 1}):
            raise DuplicateEmailError("Email already in use")

        user = UserDocument(
            full_name=data.full_name,
            email=data.email,
            password=self.passwords.hash(data.password),
        ).model_dump()

        try:
            result = await self.db.users.insert_one(user)
        except DuplicateKeyError:
            raise DuplicateEmailError("Email already in use")

        user["_id"] = result.inserted_id
        user.pop("password")
        logger.info("User registered", user_id=str(result.inserted_id))
        return serialize_document(user)

    async def authenticate(self, email: Any, password: Any) -> str:
        """
        Check credentials and issue a signed token.

        Raises:
            InvalidCredentialsError: On unknown email or wrong password
        """
        normalized = str(email or "").strip().lower()
        user = await self.db.users.find_one({"email": normalized})

        if not user or not password or not self.passwords.verify(str(password), user["password"]):
            logger.info("Login failed", email=normalized)
            raise InvalidCredentialsError("Authentication failed. Invalid email or password")

        identity = Identity(
            id=str(user["_id"]),
            email=user["email"],
            full_name=user["full_name"],
            role=user.get("role", Role.USER),
        )
        return self.tokens.sign(identity.to_claims())

    async def load_user(self, user_id: Any) -> Dict[str, Any]:
        """Fetch the raw user document or fail with NotFound."""
        object_id = to_object_id(user_id, "user ID")
        user = await self.db.users.find_one({"_id": object_id})
        if not user:
            raise NotFoundError(f"User with ID {user_id} not found")
        return user

    async def _expand(self, users: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        await self.db.expand(users, "reviews", self.db.reviews, {"_id": 1, "rating": 1, "title": 1, "book": 1})
        reviews = [review for user in users for review in user.get("reviews", [])]
        await self.db.expand(reviews, "book", self.db.books, {"_id": 1, "title": 1, "author": 1})
        await self.db.expand(users, "following", self.db.users, {"_id": 1, "full_name": 1})
        await self.db.expand(users, "followers", self.db.users, {"_id": 1, "full_name": 1})
        await self.db.expand(users, "collections", self.db.collections, {"_id": 1, "name": 1})
        return users

    async def list_users(self, identity: Optional[Identity]) -> List[Dict[str, Any]]:
        require_admin(identity)
        users = await self.db.find_many(self.db.users, {}, USER_PUBLIC_PROJECTION)
        return serialize_document(await self._expand(users))

    async def get_user(self, identity: Optional[Identity], user_id: Any) -> Dict[str, Any]:
        require_admin(identity)
        object_id = to_object_id(user_id, "user ID")
        user = await self.db.users.find_one({"_id": object_id}, USER_PUBLIC_PROJECTION)
        if not user:
            raise NotFoundError("User not found.")
        expanded = await self._expand([user])
        return serialize_document(expanded[0])

    async def _paired_update(self, step: str, *writes) -> None:
        """Issue both halves of an edge update together."""
        try:
            await asyncio.gather(*writes)
        except PyMongoError as e:
            logger.error("Paired update failed", step=step, error=str(e))
            raise UnexpectedError(f"Failed to {step}")

    async def _load_pair(self, identity: Identity, target_id: Any, self_message: str):
        target_object_id = to_object_id(target_id, "user ID")
        caller_object_id = to_object_id(identity.id, "user ID")
        if target_object_id == caller_object_id:
            raise InvalidOperationError(self_message)

        user, target = await asyncio.gather(
            self.db.users.find_one({"_id": caller_object_id}, USER_PUBLIC_PROJECTION),
            self.db.users.find_one({"_id": target_object_id}, USER_PUBLIC_PROJECTION),
        )
        if not user or not target:
            raise NotFoundError("User not found.")
        return user, target

    async def follow(self, identity: Optional[Identity], target_id: Any) -> Dict[str, Any]:
        """
        Follow another user.

        The caller's `following` and the target's `followers` are written
        together; there is no rollback if only one side succeeds.
        """
        identity = require_login(identity)
        user, target = await self._load_pair(identity, target_id, "You cannot follow yourself.")
        if contains_id(user.get("following", []), target["_id"]):
            raise AlreadyFollowingError("You are already following this user.")

        await self._paired_update(
            "follow user",
            self.db.users.update_one({"_id": user["_id"]}, {"$addToSet": {"following": target["_id"]}}),
            self.db.users.update_one({"_id": target["_id"]}, {"$addToSet": {"followers": user["_id"]}}),
        )
        logger.info("User followed", user_id=identity.id, target_id=str(target["_id"]))

        updated = await self.db.users.find_one({"_id": user["_id"]}, USER_PUBLIC_PROJECTION)
        return {
            "message": f"You are now following {target['full_name']}.",
            "user": serialize_document(updated),
        }

    async def unfollow(self, identity: Optional[Identity], target_id: Any) -> Dict[str, Any]:
        identity = require_login(identity)
        user, target = await self._load_pair(identity, target_id, "You cannot unfollow yourself.")
        if not contains_id(user.get("following", []), target["_id"]):
            raise NotFollowingError("You are not following this user.")

        await self._paired_update(
            "unfollow user",
            self.db.users.update_one({"_id": user["_id"]}, {"$pull": {"following": target["_id"]}}),
            self.db.users.update_one({"_id": target["_id"]}, {"$pull": {"followers": user["_id"]}}),
        )
        logger.info("User unfollowed", user_id=identity.id, target_id=str(target["_id"]))

        updated = await self.db.users.find_one({"_id": user["_id"]}, USER_PUBLIC_PROJECTION)
        return {
            "message": f"You have unfollowed {target['full_name']}.",
            "user": serialize_document(updated),
        }

    async def delete_user(self, identity: Optional[Identity], user_id: Optional[Any] = None) -> CascadeReport:
        """
        Delete an account and everything that references it.

        Without a user_id the caller deletes their own account; deleting
        anyone else requires an admin.
        """
        identity = require_login(identity)
        if user_id is None:
            user_id = identity.id
        else:
            require_admin(identity)

        user = await self.load_user(user_id)
        return await self.cascade.delete_user(user, triggered_by=identity.id)

    async def set_role(self, email: str, role: Role) -> Dict[str, Any]:
        """Change a user's role. Used to bootstrap administrators."""
        normalized = email.strip().lower()
        result = await self.db.users.update_one(
            {"email": normalized},
            {"$set": {"role": Role(role).value, "updated_at": datetime.utcnow()}}
        )
        if result.matched_count == 0:
            raise NotFoundError(f"User with email {normalized} not found")

        logger.info("User role changed", email=normalized, role=Role(role).value)
        user = await self.db.users.find_one({"email": normalized}, USER_PUBLIC_PROJECTION)
        return serialize_document(user)
