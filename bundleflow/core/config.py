"""
Bundleflow - Core Config

IMMUTABLE CONFIGURATION
=======================

Settings are read from the environment exactly once, at the process entry
point (CLI or worker main), and the resulting frozen object is passed into
every worker, ledger and adapter at construction. Core logic never calls
get_settings() or reads os.environ itself.

    from bundleflow.core.config import get_settings

    settings = get_settings()
    worker = ImportWorker(settings, ...)

Auto-loading of .env files is DISABLED here. The CLI loads a .env file into
os.environ (python-dotenv) before the first get_settings() call.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Logical location names; folder names are configurable per deployment.
LOCATION_NAMES = (
    "incoming",
    "processing",
    "importing",
    "completed",
    "rejected",
    "archive",
    "templates",
)


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip().lower() for part in value.split(",") if part.strip())


class Settings(BaseSettings):
    """
    Pipeline settings.

    Frozen after construction: workers receive one instance and can rely on
    it not changing underneath them.
    """

    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # DATABASE (ledger + pgmq)
    # =========================================================================

    DATABASE_URL: str = Field(
        default="",
        description="Postgres connection string for the ledger and pgmq queues",
    )
    DB_CONNECT_ATTEMPTS: int = Field(default=5, ge=1)

    # =========================================================================
    # OBJECT STORAGE (Supabase Storage)
    # =========================================================================

    SUPABASE_URL: str = Field(default="", description="Supabase project REST URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(default="", description="Service role JWT key")
    STORAGE_BUCKET: str = Field(default="bundles", description="Processing container")

    LOCATION_INCOMING: str = "incoming"
    LOCATION_PROCESSING: str = "processing"
    LOCATION_IMPORTING: str = "importing"
    LOCATION_COMPLETED: str = "completed"
    LOCATION_REJECTED: str = "rejected"
    LOCATION_ARCHIVE: str = "archive"
    LOCATION_TEMPLATES: str = "templates"

    # =========================================================================
    # QUEUES
    # =========================================================================

    INTAKE_QUEUE: str = "q_bundle_intake"
    STAGE1_QUEUE: str = "q_validate_transform"
    STAGE2_QUEUE: str = "q_import"
    DEAD_LETTER_QUEUE: str = "q_dead_letter"

    MAX_RETRY_COUNT: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Deliveries of one message before it is dead-lettered",
    )
    VISIBILITY_TIMEOUT: int = Field(default=300, ge=1, description="Seconds")
    LONG_RUNNING_TIMEOUT: int = Field(
        default=1800,
        ge=1,
        description="Seconds a long-running import may hold its message",
    )
    POLL_INTERVAL: float = Field(default=1.0, gt=0)
    BATCH_SIZE: int = Field(default=5, ge=1, le=100)

    # =========================================================================
    # INTAKE
    # =========================================================================

    RERUN_MARKER_NAME: str = "__rerun__"
    SUPPORTED_EXTENSIONS: str = ".xlsx,.xlsm,.xls,.csv"
    ARCHIVE_EXTENSIONS: str = ".zip"
    TEMPLATE_EXTENSION: str = ".xlsx"

    # =========================================================================
    # COLLABORATORS
    # =========================================================================

    TRANSFORMER_FACTORY: str | None = Field(
        default=None,
        description="module:callable returning a Transformer",
    )
    IMPORTER_FACTORY: str | None = Field(
        default=None,
        description="module:callable returning an Importer",
    )

    # =========================================================================
    # NOTIFICATIONS (SendGrid dynamic templates)
    # =========================================================================

    SENDGRID_API_KEY: str | None = None
    SENDGRID_FROM_EMAIL: str | None = None
    DEFAULT_NOTIFICATION_EMAIL: str | None = None
    FILE_COMPLETED_TEMPLATE_ID: str = "file-completed"
    FILE_REJECTED_TEMPLATE_ID: str = "file-rejected"
    BATCH_COMPLETED_TEMPLATE_ID: str = "batch-completed"

    # =========================================================================
    # LOGGING
    # =========================================================================

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    LOG_JSON: bool = True

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _upper_log_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("SUPPORTED_EXTENSIONS", "ARCHIVE_EXTENSIONS")
    @classmethod
    def _require_dotted_extensions(cls, v: str) -> str:
        for ext in _split_csv(v):
            if not ext.startswith("."):
                raise ValueError(f"extension must start with '.': {ext!r}")
        return v

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        overlap = set(self.supported_extensions) & set(self.archive_extensions)
        if overlap:
            raise ValueError(f"extensions cannot be both archive and single-file: {sorted(overlap)}")

        folders = list(self.location_folders.values())
        if len(set(folders)) != len(folders):
            raise ValueError("each storage location needs its own folder name")

        if self.LONG_RUNNING_TIMEOUT < self.VISIBILITY_TIMEOUT:
            logger.warning(
                "LONG_RUNNING_TIMEOUT (%ds) is shorter than VISIBILITY_TIMEOUT (%ds)",
                self.LONG_RUNNING_TIMEOUT,
                self.VISIBILITY_TIMEOUT,
            )
        return self

    # =========================================================================
    # DERIVED VALUES
    # =========================================================================

    @property
    def supported_extensions(self) -> tuple[str, ...]:
        return _split_csv(self.SUPPORTED_EXTENSIONS)

    @property
    def archive_extensions(self) -> tuple[str, ...]:
        return _split_csv(self.ARCHIVE_EXTENSIONS)

    @property
    def location_folders(self) -> dict[str, str]:
        """Logical location name -> folder name inside STORAGE_BUCKET."""
        return {name: getattr(self, f"LOCATION_{name.upper()}").strip("/") for name in LOCATION_NAMES}

    @property
    def notifications_enabled(self) -> bool:
        return bool(self.SENDGRID_API_KEY and self.SENDGRID_FROM_EMAIL)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Build the process-wide Settings from os.environ.

    Only entry points call this; everything else receives the instance.
    """
    return Settings()


def reset_settings() -> None:
    """Clear the cached settings (for testing or environment switch)."""
    get_settings.cache_clear()


def validate_required_settings(settings: Settings, *, needs_storage: bool = True) -> list[str]:
    """Return the names of required settings that are empty."""
    required = {"DATABASE_URL": settings.DATABASE_URL}
    if needs_storage:
        required["SUPABASE_URL"] = settings.SUPABASE_URL
        required["SUPABASE_SERVICE_ROLE_KEY"] = settings.SUPABASE_SERVICE_ROLE_KEY
    return [name for name, value in required.items() if not (value or "").strip()]


__all__ = [
    "LOCATION_NAMES",
    "Settings",
    "get_settings",
    "reset_settings",
    "validate_required_settings",
]
