"""
Pytest configuration and shared fixtures.
"""

import pytest
from mongomock_motor import AsyncMongoMockClient

from api.auth import PasswordManager, token_manager
from api.main import Services
from library.database import MongoDBManager
from library.models import Identity, Role
from library.uploads import ImageStore


class FakeUpload:
    """Stands in for an UploadFile: filename, content_type and async read()."""

    def __init__(self, filename: str = "cover.png", content: bytes = b"\x89PNG", content_type: str = "image/png"):
        self.filename = filename
        self.content = content
        self.content_type = content_type

    async def read(self) -> bytes:
        return self.content


@pytest.fixture
def make_upload():
    """Factory for fake uploaded files."""
    return FakeUpload


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def image_store(upload_dir):
    return ImageStore(upload_dir)


@pytest.fixture
def passwords():
    """Password manager with the lowest bcrypt cost to keep tests fast."""
    return PasswordManager(rounds=4)


@pytest.fixture
async def db_manager():
    """MongoDB manager backed by an in-process mock client, with indexes created."""
    manager = MongoDBManager("mongodb://localhost:27017", "readingbud_test")
    await manager.connect(client=AsyncMongoMockClient())
    return manager


@pytest.fixture
def services(db_manager, image_store, passwords):
    return Services(db_manager, image_store, passwords, token_manager, max_collections=5)


@pytest.fixture
def register(services):
    """Factory registering a user and returning the caller identity for it."""
    async def _register(full_name: str = "Reader One", email: str = None, role: Role = Role.USER) -> Identity:
        email = email or f"{full_name.lower().replace(' ', '.')}@example.com"
        user = await services.users.register(full_name, email, "secret123")
        if role != Role.USER:
            await services.users.set_role(email, role)
        return Identity(id=user["id"], email=user["email"], full_name=user["full_name"], role=role)
    return _register


@pytest.fixture
async def admin(register):
    return await register("Ada Admin", role=Role.ADMIN)


@pytest.fixture
async def reader(register):
    return await register("Reader One")


@pytest.fixture
def sample_book_fields():
    """Sample book form fields."""
    return {
        "title": "Dune",
        "author": "Frank Herbert",
        "publishing_date": "1965",
    }
