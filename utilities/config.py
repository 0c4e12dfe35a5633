"""
Configuration management using environment variables.
Handles database, token, upload and logging settings with validation and defaults.
"""

from typing import Optional
from pydantic import Field, validator
from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    """
    Configuration class for the ReadingBud service.
    Uses pydantic BaseSettings for environment variable management.
    """

    # Environment selection (production, development, test)
    environment: str = Field(default="development")

    # MongoDB Configuration
    mongodb_url: str = Field(default="mongodb://localhost:27017")
    mongodb_database: str = Field(default="readingbud")
    mongodb_test_url: str = Field(default="mongodb://localhost:27017")
    mongodb_test_database: str = Field(default="readingbud_test")

    # Token Configuration
    jwt_secret: str = Field(default="change-me-in-production")
    jwt_algorithm: str = Field(default="HS256")
    token_expire_hours: int = Field(default=168)

    # Password hashing
    password_hash_rounds: int = Field(default=10)

    # Collections
    max_collections_per_user: int = Field(default=5)

    # Uploads
    upload_dir: str = Field(default="uploads")
    allowed_image_prefix: str = Field(default="image/")

    # Logging Configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    # Development/Testing
    debug: bool = Field(default=False)

    @validator('environment')
    def validate_environment(cls, v):
        """Ensure environment is one of the known deployment targets."""
        valid_environments = ['production', 'development', 'test']
        if v.lower() not in valid_environments:
            raise ValueError(f'environment must be one of: {valid_environments}')
        return v.lower()

    @validator('token_expire_hours')
    def validate_token_expiry(cls, v):
        """Ensure token lifetime is positive."""
        if v < 1:
            raise ValueError('token_expire_hours must be at least 1')
        return v

    @validator('password_hash_rounds')
    def validate_hash_rounds(cls, v):
        """Ensure bcrypt cost stays in the range bcrypt accepts."""
        if v < 4 or v > 31:
            raise ValueError('password_hash_rounds must be between 4 and 31')
        return v

    @validator('max_collections_per_user')
    def validate_collection_cap(cls, v):
        """Ensure the collection cap is positive."""
        if v < 1:
            raise ValueError('max_collections_per_user must be at least 1')
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Ensure log level is valid."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'log_level must be one of: {valid_levels}')
        return v.upper()

    @validator('log_format')
    def validate_log_format(cls, v):
        """Ensure log format is valid."""
        valid_formats = ['json', 'console']
        if v.lower() not in valid_formats:
            raise ValueError(f'log_format must be one of: {valid_formats}')
        return v.lower()

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields from .env

    def is_test(self) -> bool:
        """Check if running against the test database."""
        return self.environment == "test"

    def get_mongodb_url(self) -> str:
        """Connection string for the selected environment."""
        return self.mongodb_test_url if self.is_test() else self.mongodb_url

    def get_database_name(self) -> str:
        """Database name for the selected environment."""
        return self.mongodb_test_database if self.is_test() else self.mongodb_database

    def get_upload_dir(self) -> Path:
        """Get upload directory as Path object."""
        return Path(self.upload_dir)


# Global configuration instance
config = Settings()
