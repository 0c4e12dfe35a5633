"""
Tests for accounts, login, the follower graph and account deletion.
"""

import pytest
from bson import ObjectId

from api.auth import token_manager
from library.errors import (
    AlreadyFollowingError, DuplicateEmailError, ForbiddenError, InputValidationError,
    InvalidCredentialsError, InvalidOperationError, NotFollowingError, NotFoundError,
    UnauthenticatedError
)
from library.models import Role


class TestRegistration:
    """Test cases for registration and login."""

    @pytest.mark.asyncio
    async def test_register_normalizes_and_hides_digest(self, services, db_manager):
        user = await services.users.register("  Paul Atreides ", " Paul@Arrakis.com ", "spice")

        assert user["full_name"] == "Paul Atreides"
        assert user["email"] == "paul@arrakis.com"
        assert user["role"] == "user"
        assert "password" not in user

        stored = await db_manager.users.find_one({"_id": ObjectId(user["id"])})
        assert stored["password"] != "spice"
        assert services.users.passwords.verify("spice", stored["password"])
        assert stored["reviews"] == [] and stored["collections"] == []

    @pytest.mark.asyncio
    async def test_duplicate_email_is_case_insensitive(self, services):
        await services.users.register("Paul", "paul@arrakis.com", "spice")

        with pytest.raises(DuplicateEmailError) as exc_info:
            await services.users.register("Other Paul", "PAUL@arrakis.com", "spice")
        assert exc_info.value.message == "Email already in use"

    @pytest.mark.asyncio
    async def test_register_reports_missing_fields(self, services):
        with pytest.raises(InputValidationError) as exc_info:
            await services.users.register(None, "paul@arrakis.com", None)

        assert set(exc_info.value.details) == {"full_name", "password"}

    @pytest.mark.asyncio
    async def test_authenticate_issues_token_with_claims(self, services):
        user = await services.users.register("Paul", "paul@arrakis.com", "spice")

        token = await services.users.authenticate("Paul@Arrakis.com", "spice")
        claims = token_manager.verify(token)

        assert claims["id"] == user["id"]
        assert claims["email"] == "paul@arrakis.com"
        assert claims["full_name"] == "Paul"
        assert claims["role"] == "user"
        assert "exp" in claims

    @pytest.mark.asyncio
    async def test_authenticate_rejects_bad_credentials(self, services):
        await services.users.register("Paul", "paul@arrakis.com", "spice")

        with pytest.raises(InvalidCredentialsError):
            await services.users.authenticate("paul@arrakis.com", "wrong")
        with pytest.raises(InvalidCredentialsError):
            await services.users.authenticate("nobody@arrakis.com", "spice")


class TestReads:
    """Test cases for admin-only user reads."""

    @pytest.mark.asyncio
    async def test_list_users_requires_admin(self, services, reader):
        with pytest.raises(UnauthenticatedError):
            await services.users.list_users(None)
        with pytest.raises(ForbiddenError):
            await services.users.list_users(reader)

    @pytest.mark.asyncio
    async def test_admin_reads_expanded_users(self, services, admin, reader):
        await services.users.follow(reader, admin.id)

        users = await services.users.list_users(admin)
        assert len(users) == 2
        assert all("password" not in user for user in users)

        fetched = await services.users.get_user(admin, reader.id)
        assert fetched["following"] == [{"id": admin.id, "full_name": "Ada Admin"}]

    @pytest.mark.asyncio
    async def test_get_unknown_user(self, services, admin):
        with pytest.raises(NotFoundError) as exc_info:
            await services.users.get_user(admin, str(ObjectId()))
        assert exc_info.value.message == "User not found."

        with pytest.raises(InputValidationError):
            await services.users.get_user(admin, "not-an-id")


class TestFollowing:
    """Test cases for follow and unfollow."""

    @pytest.mark.asyncio
    async def test_follow_updates_both_sides(self, services, db_manager, register):
        paul = await register("Paul Atreides")
        jessica = await register("Lady Jessica")

        result = await services.users.follow(paul, jessica.id)

        assert result["message"] == "You are now following Lady Jessica."
        assert result["user"]["following"] == [jessica.id]
        target = await db_manager.users.find_one({"_id": ObjectId(jessica.id)})
        assert target["followers"] == [ObjectId(paul.id)]

    @pytest.mark.asyncio
    async def test_follow_twice(self, services, register):
        paul = await register("Paul Atreides")
        jessica = await register("Lady Jessica")
        await services.users.follow(paul, jessica.id)

        with pytest.raises(AlreadyFollowingError):
            await services.users.follow(paul, jessica.id)

    @pytest.mark.asyncio
    async def test_follow_self(self, services, reader):
        with pytest.raises(InvalidOperationError):
            await services.users.follow(reader, reader.id)

    @pytest.mark.asyncio
    async def test_follow_self_with_uppercase_id(self, services, db_manager, reader):
        with pytest.raises(InvalidOperationError):
            await services.users.follow(reader, reader.id.upper())
        with pytest.raises(InvalidOperationError):
            await services.users.unfollow(reader, reader.id.upper())

        user = await db_manager.users.find_one({"_id": ObjectId(reader.id)})
        assert user["following"] == []
        assert user["followers"] == []

    @pytest.mark.asyncio
    async def test_follow_unknown_user(self, services, reader):
        with pytest.raises(NotFoundError):
            await services.users.follow(reader, str(ObjectId()))

    @pytest.mark.asyncio
    async def test_follow_requires_login(self, services, reader):
        with pytest.raises(UnauthenticatedError):
            await services.users.follow(None, reader.id)

    @pytest.mark.asyncio
    async def test_unfollow(self, services, db_manager, register):
        paul = await register("Paul Atreides")
        jessica = await register("Lady Jessica")

        with pytest.raises(NotFollowingError):
            await services.users.unfollow(paul, jessica.id)

        await services.users.follow(paul, jessica.id)
        result = await services.users.unfollow(paul, jessica.id)

        assert result["user"]["following"] == []
        target = await db_manager.users.find_one({"_id": ObjectId(jessica.id)})
        assert target["followers"] == []


class TestDeletion:
    """Test cases for account deletion."""

    @pytest.mark.asyncio
    async def test_self_delete_removes_every_reference(
        self, services, db_manager, admin, register, sample_book_fields
    ):
        paul = await register("Paul Atreides")
        jessica = await register("Lady Jessica")
        book = await services.books.create_book(admin, sample_book_fields)
        review = await services.reviews.create_review(paul, book["id"], {"title": "Epic", "text": "Sand", "rating": "5"})
        created = await services.collections.create_collection(paul, "Favourites", [book["id"]])
        await services.users.follow(paul, jessica.id)
        await services.users.follow(jessica, paul.id)

        report = await services.users.delete_user(paul)

        assert report.entity == "user"
        assert report.steps[-1] == "delete user"
        paul_id = ObjectId(paul.id)
        assert await db_manager.users.find_one({"_id": paul_id}) is None
        assert await db_manager.reviews.find_one({"_id": ObjectId(review["id"])}) is None
        assert await db_manager.collections.find_one({"_id": ObjectId(created.collection["id"])}) is None

        stored_book = await db_manager.books.find_one({"_id": ObjectId(book["id"])})
        assert stored_book["reviews"] == []
        assert stored_book["collections"] == []

        stored_jessica = await db_manager.users.find_one({"_id": ObjectId(jessica.id)})
        assert stored_jessica["followers"] == []
        assert stored_jessica["following"] == []

    @pytest.mark.asyncio
    async def test_deleting_another_user_requires_admin(self, services, db_manager, admin, register):
        paul = await register("Paul Atreides")
        jessica = await register("Lady Jessica")

        with pytest.raises(ForbiddenError):
            await services.users.delete_user(paul, jessica.id)

        await services.users.delete_user(admin, jessica.id)
        assert await db_manager.users.find_one({"_id": ObjectId(jessica.id)}) is None

    @pytest.mark.asyncio
    async def test_set_role(self, services, reader):
        user = await services.users.set_role("Reader.One@example.com", Role.ADMIN)
        assert user["role"] == "admin"

        with pytest.raises(NotFoundError):
            await services.users.set_role("ghost@example.com", Role.ADMIN)
