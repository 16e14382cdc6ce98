"""
Configuration settings for the askdocs gateway
"""
from typing import Annotated, List
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import Field, field_validator
import json


def _parse_list(v):
    """Accept a JSON list or a comma-separated string"""
    if isinstance(v, str):
        try:
            return json.loads(v)
        except json.JSONDecodeError:
            return [item.strip() for item in v.split(",") if item.strip()]
    return v


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Configuration
    API_VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # CORS Settings
    CORS_ORIGINS: Annotated[List[str], NoDecode] = Field(default=["http://localhost:3000"])

    @field_validator("CORS_ORIGINS", "DOCUMENT_EXTENSIONS", mode="before")
    @classmethod
    def parse_list_settings(cls, v):
        """Parse list settings from JSON or comma-separated strings"""
        return _parse_list(v)

    # Chat backend
    BACKEND_URL: str = "http://localhost:3000"
    CHAT_PATH: str = "/api/chat"
    DEFAULT_TOP_K: int = Field(default=3, ge=1, le=50)

    # Timeouts and pooling
    REQUEST_TIMEOUT: int = 20
    STREAM_TIMEOUT: int = 120  # read timeout between chunks
    CONNECTION_POOL_SIZE: int = 20

    # Rendering
    SNAPSHOT_EVERY_N_FRAMES: int = Field(default=1, ge=1)
    STRIP_PROVENANCE: bool = True
    DOCUMENT_EXTENSIONS: Annotated[List[str], NoDecode] = Field(
        default=["pdf", "docx", "doc", "txt", "xlsx", "xls", "pptx", "ppt", "csv", "md"]
    )

    # Document storage (file-open links)
    STORAGE_URL: str = "http://localhost:54321"
    STORAGE_BUCKET: str = "documents"

    # User-visible notice for backend failures
    ERROR_MESSAGE: str = (
        "Désolé, j'ai eu un petit problème. Pouvez-vous réessayer plus tard ?"
    )

    # Feature Flags
    ENABLE_METRICS: bool = True

    def get_chat_url(self) -> str:
        """Full URL of the backend chat endpoint"""
        return f"{self.BACKEND_URL.rstrip('/')}/{self.CHAT_PATH.lstrip('/')}"
