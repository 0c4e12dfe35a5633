"""
Tests for the book catalog and image handling.
"""

import pytest
from datetime import datetime

from bson import ObjectId

from library.errors import ForbiddenError, InputValidationError, NotFoundError, UnauthenticatedError


def stored_files(upload_dir):
    return sorted(path.name for path in upload_dir.iterdir()) if upload_dir.exists() else []


class TestCreateBook:
    """Test cases for book creation."""

    @pytest.mark.asyncio
    async def test_create_requires_admin(self, services, reader, sample_book_fields):
        with pytest.raises(UnauthenticatedError):
            await services.books.create_book(None, sample_book_fields)
        with pytest.raises(ForbiddenError):
            await services.books.create_book(reader, sample_book_fields)

    @pytest.mark.asyncio
    async def test_create_with_year_and_url(self, services, db_manager, admin, sample_book_fields):
        fields = dict(sample_book_fields, image_url_M="https://covers.example.com/dune.jpg")

        book = await services.books.create_book(admin, fields)

        assert book["title"] == "Dune"
        assert book["publishing_date"] == "1965-01-01T00:00:00"
        assert book["image_path_M"] == "https://covers.example.com/dune.jpg"
        assert book["image_path_S"] is None
        assert book["reviews"] == [] and book["collections"] == []

        stored = await db_manager.books.find_one({"_id": ObjectId(book["id"])})
        assert stored["publishing_date"] == datetime(1965, 1, 1)

    @pytest.mark.asyncio
    async def test_create_with_upload(self, services, admin, upload_dir, make_upload, sample_book_fields):
        book = await services.books.create_book(
            admin, sample_book_fields, {"image_path_S": make_upload("dune.png")}
        )

        files = stored_files(upload_dir)
        assert len(files) == 1
        assert files[0].endswith("-dune.png")
        assert book["image_path_S"].endswith(files[0])

    @pytest.mark.asyncio
    async def test_invalid_fields_remove_uploads(self, services, admin, upload_dir, make_upload):
        with pytest.raises(InputValidationError) as exc_info:
            await services.books.create_book(
                admin,
                {"author": "Frank Herbert", "publishing_date": "1965"},
                {"image_path_S": make_upload("s.png"), "image_path_L": make_upload("l.png")}
            )

        assert "title" in exc_info.value.details
        assert stored_files(upload_dir) == []

    @pytest.mark.asyncio
    async def test_non_image_upload_rejected(self, services, admin, upload_dir, make_upload, sample_book_fields):
        with pytest.raises(InputValidationError) as exc_info:
            await services.books.create_book(
                admin,
                sample_book_fields,
                {
                    "image_path_S": make_upload("s.png"),
                    "image_path_M": make_upload("notes.txt", b"text", "text/plain"),
                }
            )

        assert exc_info.value.message == "Error uploading files"
        assert stored_files(upload_dir) == []

    @pytest.mark.asyncio
    async def test_bad_publishing_date(self, services, admin):
        with pytest.raises(InputValidationError) as exc_info:
            await services.books.create_book(
                admin, {"title": "Dune", "author": "Frank Herbert", "publishing_date": "soon"}
            )
        assert "publishing_date" in exc_info.value.details

    @pytest.mark.asyncio
    async def test_rejects_local_image_values(self, services, db_manager, admin, tmp_path, sample_book_fields):
        outside = str(tmp_path / "notes.txt")

        with pytest.raises(InputValidationError) as exc_info:
            await services.books.create_book(admin, dict(sample_book_fields, image_url_S=outside))
        assert exc_info.value.details == {"image_url_S": "Must be an http(s) URL"}

        with pytest.raises(InputValidationError) as exc_info:
            await services.books.create_book(admin, dict(sample_book_fields, image_path_M=outside))
        assert exc_info.value.details == {"image_path_M": "Must be an uploaded image file"}

        assert await db_manager.books.count_documents({}) == 0


class TestReadBook:
    """Test cases for public reads."""

    @pytest.mark.asyncio
    async def test_list_empty(self, services):
        assert await services.books.list_books() == []

    @pytest.mark.asyncio
    async def test_get_expands_reviews(self, services, admin, reader, sample_book_fields):
        book = await services.books.create_book(admin, sample_book_fields)
        review = await services.reviews.create_review(reader, book["id"], {"title": "Epic", "text": "Sand", "rating": "5"})

        fetched = await services.books.get_book(book["id"])

        assert fetched["reviews"] == [{
            "id": review["id"], "rating": "5", "title": "Epic", "user": reader.id
        }]

    @pytest.mark.asyncio
    async def test_get_missing(self, services):
        missing = str(ObjectId())
        with pytest.raises(NotFoundError) as exc_info:
            await services.books.get_book(missing)
        assert exc_info.value.message == f"Book with id {missing} was not found"

        with pytest.raises(InputValidationError):
            await services.books.get_book("12345")


class TestUpdateBook:
    """Test cases for book updates."""

    @pytest.mark.asyncio
    async def test_update_fields(self, services, admin, sample_book_fields):
        book = await services.books.create_book(admin, sample_book_fields)

        updated = await services.books.update_book(admin, book["id"], {"title": "Dune Messiah", "publishing_date": "1969"})

        assert updated["title"] == "Dune Messiah"
        assert updated["author"] == "Frank Herbert"
        assert updated["publishing_date"] == "1969-01-01T00:00:00"

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, services, admin, sample_book_fields):
        book = await services.books.create_book(admin, sample_book_fields)

        with pytest.raises(InputValidationError) as exc_info:
            await services.books.update_book(admin, book["id"], {"reviews": []})
        assert exc_info.value.details == {"rejected_fields": ["reviews"]}

    @pytest.mark.asyncio
    async def test_update_requires_admin(self, services, admin, reader, sample_book_fields):
        book = await services.books.create_book(admin, sample_book_fields)
        with pytest.raises(ForbiddenError):
            await services.books.update_book(reader, book["id"], {"title": "Mine now"})

    @pytest.mark.asyncio
    async def test_replaced_upload_is_deleted(self, services, admin, upload_dir, make_upload, sample_book_fields):
        book = await services.books.create_book(
            admin, sample_book_fields, {"image_path_S": make_upload("old.png")}
        )
        old_path = book["image_path_S"]

        updated = await services.books.update_book(
            admin, book["id"], {}, {"image_path_S": make_upload("new.png")}
        )

        files = stored_files(upload_dir)
        assert len(files) == 1
        assert files[0].endswith("-new.png")
        assert updated["image_path_S"] != old_path

    @pytest.mark.asyncio
    async def test_replaced_url_is_not_deleted(self, services, admin, upload_dir, make_upload, sample_book_fields):
        book = await services.books.create_book(
            admin, dict(sample_book_fields, image_url_L="https://covers.example.com/dune.jpg")
        )

        updated = await services.books.update_book(
            admin, book["id"], {}, {"image_path_L": make_upload("large.png")}
        )

        assert updated["image_path_L"].endswith("-large.png")
        assert len(stored_files(upload_dir)) == 1

    @pytest.mark.asyncio
    async def test_update_keeps_collection_membership(self, services, db_manager, admin, reader, sample_book_fields):
        book = await services.books.create_book(admin, sample_book_fields)
        created = await services.collections.create_collection(reader, "Sci-fi", [book["id"]])
        collection_id = ObjectId(created.collection["id"])
        # Simulate a lost membership write
        await db_manager.collections.update_one({"_id": collection_id}, {"$set": {"books": []}})

        await services.books.update_book(admin, book["id"], {"author": "F. Herbert"})

        collection = await db_manager.collections.find_one({"_id": collection_id})
        assert collection["books"] == [ObjectId(book["id"])]

    @pytest.mark.asyncio
    async def test_update_rejects_local_image_url(self, services, admin, sample_book_fields):
        book = await services.books.create_book(admin, sample_book_fields)

        with pytest.raises(InputValidationError) as exc_info:
            await services.books.update_book(admin, book["id"], {"image_url_L": "/etc/hostname"})
        assert exc_info.value.details == {"image_url_L": "Must be an http(s) URL"}

    @pytest.mark.asyncio
    async def test_replacing_path_outside_upload_dir_keeps_file(
        self, services, db_manager, admin, tmp_path, make_upload, sample_book_fields
    ):
        outside = tmp_path / "notes.txt"
        outside.write_text("keep me")
        book = await services.books.create_book(admin, sample_book_fields)
        await db_manager.books.update_one({"_id": ObjectId(book["id"])}, {"$set": {"image_path_S": str(outside)}})

        updated = await services.books.update_book(
            admin, book["id"], {}, {"image_path_S": make_upload("new.png")}
        )

        assert updated["image_path_S"].endswith("-new.png")
        assert outside.read_text() == "keep me"


class TestDeleteBook:
    """Test cases for the book cascade."""

    @pytest.mark.asyncio
    async def test_delete_book_cascade(
        self, services, db_manager, admin, reader, upload_dir, make_upload, sample_book_fields
    ):
        book = await services.books.create_book(
            admin, sample_book_fields, {"image_path_M": make_upload("m.png")}
        )
        review = await services.reviews.create_review(reader, book["id"], {"title": "Epic", "text": "Sand", "rating": "5"})
        created = await services.collections.create_collection(reader, "Sci-fi", [book["id"]])

        report = await services.books.delete_book(admin, book["id"])

        assert "delete book images" in report.steps
        assert report.steps[-1] == "delete book"
        assert await db_manager.books.find_one({"_id": ObjectId(book["id"])}) is None
        assert await db_manager.reviews.find_one({"_id": ObjectId(review["id"])}) is None

        collection = await db_manager.collections.find_one({"_id": ObjectId(created.collection["id"])})
        assert collection["books"] == []
        user = await db_manager.users.find_one({"_id": ObjectId(reader.id)})
        assert user["reviews"] == []
        assert stored_files(upload_dir) == []

    @pytest.mark.asyncio
    async def test_delete_requires_admin(self, services, admin, reader, sample_book_fields):
        book = await services.books.create_book(admin, sample_book_fields)
        with pytest.raises(ForbiddenError):
            await services.books.delete_book(reader, book["id"])

    @pytest.mark.asyncio
    async def test_delete_keeps_files_outside_upload_dir(
        self, services, db_manager, admin, tmp_path, sample_book_fields
    ):
        outside = tmp_path / "notes.txt"
        outside.write_text("keep me")
        book = await services.books.create_book(admin, sample_book_fields)
        await db_manager.books.update_one({"_id": ObjectId(book["id"])}, {"$set": {"image_path_L": str(outside)}})

        await services.books.delete_book(admin, book["id"])

        assert await db_manager.books.find_one({"_id": ObjectId(book["id"])}) is None
        assert outside.exists()
