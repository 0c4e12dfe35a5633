"""
FastAPI main application for the ReadingBud API.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from fastapi import APIRouter, Body, Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.auth import PasswordManager, TokenManager, get_identity, password_manager, token_manager
from api.config import config as api_config
from api.models import (
    BookMembershipRequest, CollectionCreateRequest, DataResponse, ErrorResponse,
    HealthResponse, LoginRequest, RegisterRequest,
    ReviewCreateRequest, TokenResponse
)
from library.book_service import BookService
from library.cascade import CascadeDeleter
from library.collection_service import CollectionService
from library.database import MongoDBManager
from library.errors import LibraryError, UnexpectedError
from library.models import IMAGE_FIELDS, Identity
from library.review_service import ReviewService
from library.uploads import ImageStore
from library.user_service import UserService
from utilities.config import config
from utilities.logger import setup_logging

# Setup logging
logger = structlog.get_logger(__name__)


class Services:
    """The library services wired to one database manager."""

    def __init__(
        self,
        db_manager: MongoDBManager,
        image_store: ImageStore,
        passwords: PasswordManager,
        tokens: TokenManager,
        max_collections: int = 5
    ):
        self.db = db_manager
        self.images = image_store
        self.cascade = CascadeDeleter(db_manager, image_store)
        self.users = UserService(db_manager, passwords, tokens, self.cascade)
        self.books = BookService(db_manager, image_store, self.cascade)
        self.reviews = ReviewService(db_manager, self.cascade)
        self.collections = CollectionService(db_manager, self.cascade, max_collections)


# Global service container
services: Optional[Services] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global services

    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file,
        debug=config.debug
    )
    logger.info("Starting ReadingBud API", environment=config.environment)

    db_manager = MongoDBManager(config.get_mongodb_url(), config.get_database_name())
    try:
        await db_manager.connect()
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        raise

    services = Services(
        db_manager,
        ImageStore(config.get_upload_dir(), config.allowed_image_prefix),
        password_manager,
        token_manager,
        max_collections=config.max_collections_per_user
    )

    yield

    logger.info("Shutting down ReadingBud API")
    await db_manager.disconnect()
    services = None


def get_services() -> Services:
    """Dependency returning the wired services."""
    if services is None:
        raise UnexpectedError("Database service not available")
    return services


# Create FastAPI application
app = FastAPI(
    title=api_config.api_title,
    description="""
    REST API for a social reading application.

    ## Features

    * **Users**: Registration, token login, following other readers
    * **Books**: A catalog maintained by administrators, with cover images
    * **Reviews**: One review per reader and book
    * **Collections**: Up to five curated book lists per reader

    ## Authentication

    Write operations require a token from `POST /api/users/login`:

    ```
    Authorization: Bearer your_token_here
    ```
    """,
    version=api_config.api_version,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=api_config.cors_origins,
    allow_credentials=api_config.cors_allow_credentials,
    allow_methods=api_config.cors_allow_methods,
    allow_headers=api_config.cors_allow_headers,
)

HTTP_ERROR_KINDS = {
    status.HTTP_401_UNAUTHORIZED: "Unauthenticated",
    status.HTTP_403_FORBIDDEN: "Forbidden",
    status.HTTP_404_NOT_FOUND: "NotFound",
    status.HTTP_405_METHOD_NOT_ALLOWED: "MethodNotAllowed",
}


# Exception handlers
@app.exception_handler(LibraryError)
async def library_exception_handler(request: Request, exc: LibraryError):
    """Map library errors onto their HTTP status."""
    if exc.status_code >= 500:
        logger.error("Operation failed", path=request.url.path, error=exc.message, detail=exc.details)
    else:
        logger.info("Request rejected", path=request.url.path, kind=exc.kind, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(ErrorResponse(**exc.to_dict()).model_dump())
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle malformed request bodies."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=jsonable_encoder(ErrorResponse(
            message="Request validation failed",
            error="ValidationError",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors()
        ).model_dump())
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            message=str(exc.detail),
            error=HTTP_ERROR_KINDS.get(exc.status_code, "HTTPError"),
            status_code=exc.status_code
        ).model_dump(),
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            message="Internal server error",
            error="Unexpected",
            detail=str(exc) if api_config.debug else None,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        ).model_dump()
    )


# Health check endpoint (no authentication required)
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    db_status = "unknown"
    if services:
        health_info = await services.db.health_check()
        db_status = health_info.get("status", "unknown")

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        timestamp=datetime.utcnow(),
        version=api_config.api_version,
        database_status=db_status
    )


async def _split_form(request: Request) -> Tuple[Dict[str, Any], Dict[str, UploadFile]]:
    """Separate a multipart form into text fields and image uploads."""
    form = await request.form()
    fields: Dict[str, Any] = {}
    images: Dict[str, UploadFile] = {}
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if not value.filename:
                continue
            if key in IMAGE_FIELDS:
                images[key] = value
            else:
                fields[key] = value.filename
        else:
            fields[key] = value
    return fields, images


users_router = APIRouter(prefix="/users", tags=["Users"])
books_router = APIRouter(prefix="/books", tags=["Books"])
reviews_router = APIRouter(prefix="/reviews", tags=["Reviews"])
collections_router = APIRouter(prefix="/collections", tags=["Collections"])


# Users endpoints
@users_router.post("/register", response_model=DataResponse, status_code=status.HTTP_201_CREATED)
async def register_user(body: RegisterRequest, svc: Services = Depends(get_services)):
    """Register a new account. The password digest is never returned."""
    user = await svc.users.register(body.full_name, body.email, body.password)
    return DataResponse(message="User registered successfully", data=user)


@users_router.post("/login", response_model=TokenResponse)
async def login_user(body: LoginRequest, svc: Services = Depends(get_services)):
    token = await svc.users.authenticate(body.email, body.password)
    return TokenResponse(message="Login successful", token=token)


@users_router.get("", response_model=DataResponse)
async def list_users(
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    users = await svc.users.list_users(identity)
    return DataResponse(message="Users retrieved successfully", data=users)


@users_router.delete("/me", response_model=DataResponse)
async def delete_own_account(
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    report = await svc.users.delete_user(identity)
    return DataResponse(message="User deleted successfully", data=report.model_dump())


@users_router.get("/{user_id}", response_model=DataResponse)
async def get_user(
    user_id: str,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    user = await svc.users.get_user(identity, user_id)
    return DataResponse(message="User retrieved successfully", data=user)


@users_router.delete("/{user_id}", response_model=DataResponse)
async def delete_user(
    user_id: str,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    """Delete any account. Admin only."""
    report = await svc.users.delete_user(identity, user_id)
    return DataResponse(message="User deleted successfully", data=report.model_dump())


@users_router.post("/{user_id}/follow", response_model=DataResponse)
async def follow_user(
    user_id: str,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    result = await svc.users.follow(identity, user_id)
    return DataResponse(message=result["message"], data=result["user"])


@users_router.post("/{user_id}/unfollow", response_model=DataResponse)
async def unfollow_user(
    user_id: str,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    result = await svc.users.unfollow(identity, user_id)
    return DataResponse(message=result["message"], data=result["user"])


# Books endpoints
@books_router.get("", response_model=DataResponse)
async def list_books(svc: Services = Depends(get_services)):
    books = await svc.books.list_books()
    return DataResponse(message="Books retrieved successfully", data=books)


@books_router.post("", response_model=DataResponse, status_code=status.HTTP_201_CREATED)
async def create_book(
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    """
    Create a book from a multipart form.

    - **title**, **author**, **publishing_date**: required
    - **image_path_S/M/L**: optional image uploads
    - **image_url_S/M/L**: optional external image URLs
    """
    fields, images = await _split_form(request)
    book = await svc.books.create_book(identity, fields, images)
    return DataResponse(message="Book created successfully", data=book)


@books_router.get("/{book_id}", response_model=DataResponse)
async def get_book(book_id: str, svc: Services = Depends(get_services)):
    book = await svc.books.get_book(book_id)
    return DataResponse(message="Book retrieved successfully", data=book)


@books_router.put("/{book_id}", response_model=DataResponse)
async def update_book(
    book_id: str,
    request: Request,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    """Update a book from a multipart form; only the fields sent change."""
    fields, images = await _split_form(request)
    book = await svc.books.update_book(identity, book_id, fields, images)
    return DataResponse(message="Book updated successfully", data=book)


@books_router.delete("/{book_id}", response_model=DataResponse)
async def delete_book(
    book_id: str,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    report = await svc.books.delete_book(identity, book_id)
    return DataResponse(message="Book deleted successfully", data=report.model_dump())


# Reviews endpoints
@reviews_router.get("", response_model=DataResponse)
async def list_reviews(svc: Services = Depends(get_services)):
    reviews = await svc.reviews.list_reviews()
    return DataResponse(message="Reviews retrieved successfully", data=reviews)


@reviews_router.post("", response_model=DataResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    body: ReviewCreateRequest,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    review = await svc.reviews.create_review(identity, body.book, body.review_fields())
    return DataResponse(message="Review created successfully", data=review)


@reviews_router.get("/{review_id}", response_model=DataResponse)
async def get_review(review_id: str, svc: Services = Depends(get_services)):
    review = await svc.reviews.get_review(review_id)
    return DataResponse(message="Review retrieved successfully", data=review)


@reviews_router.put("/{review_id}", response_model=DataResponse)
async def update_review(
    review_id: str,
    updates: Dict[str, Any] = Body(...),
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    review = await svc.reviews.update_review(identity, review_id, updates)
    return DataResponse(message="Review updated successfully", data=review)


@reviews_router.delete("/{review_id}", response_model=DataResponse)
async def delete_review(
    review_id: str,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    report = await svc.reviews.delete_review(identity, review_id)
    return DataResponse(message="Review deleted successfully", data=report.model_dump())


# Collections endpoints
class CollectionResponse(DataResponse):
    """Collection write response, listing book ids that were not added."""
    dropped_book_ids: List[str] = []


@collections_router.get("", response_model=DataResponse)
async def list_collections(svc: Services = Depends(get_services)):
    collections = await svc.collections.list_collections()
    return DataResponse(message="Collections retrieved successfully", data=collections)


@collections_router.post("", response_model=CollectionResponse, status_code=status.HTTP_201_CREATED)
async def create_collection(
    body: CollectionCreateRequest,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    """Create a collection. Unknown book ids are left out and listed in dropped_book_ids."""
    result = await svc.collections.create_collection(identity, body.name, body.book_ids, body.description)
    return CollectionResponse(
        message="Collection created successfully",
        data=result.collection,
        dropped_book_ids=result.dropped_book_ids
    )


@collections_router.get("/{collection_id}", response_model=DataResponse)
async def get_collection(collection_id: str, svc: Services = Depends(get_services)):
    collection = await svc.collections.get_collection(collection_id)
    return DataResponse(message="Collection retrieved successfully", data=collection)


@collections_router.put("/{collection_id}", response_model=CollectionResponse)
async def update_collection(
    collection_id: str,
    updates: Dict[str, Any] = Body(...),
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    result = await svc.collections.update_collection(identity, collection_id, updates)
    return CollectionResponse(
        message="Collection updated successfully",
        data=result.collection,
        dropped_book_ids=result.dropped_book_ids
    )


@collections_router.delete("/{collection_id}", response_model=DataResponse)
async def delete_collection(
    collection_id: str,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    report = await svc.collections.delete_collection(identity, collection_id)
    return DataResponse(message="Collection deleted successfully", data=report.model_dump())


@collections_router.post("/{collection_id}/add_book", response_model=DataResponse)
async def add_book_to_collection(
    collection_id: str,
    body: BookMembershipRequest,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    collection = await svc.collections.add_book(identity, collection_id, body.book_id)
    return DataResponse(message="Book added to collection successfully", data=collection)


@collections_router.delete("/{collection_id}/remove_book", response_model=DataResponse)
async def remove_book_from_collection(
    collection_id: str,
    body: BookMembershipRequest,
    identity: Optional[Identity] = Depends(get_identity),
    svc: Services = Depends(get_services)
):
    collection = await svc.collections.remove_book(identity, collection_id, body.book_id)
    return DataResponse(message="Book removed from collection successfully", data=collection)


for router in (users_router, books_router, reviews_router, collections_router):
    app.include_router(router, prefix=api_config.api_prefix)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=api_config.host,
        port=api_config.port,
        reload=True,
        log_level="info"
    )
