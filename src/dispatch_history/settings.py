"""Service settings for dispatch-history.

All configuration is read from the environment with the DISPATCH_HISTORY_
prefix and covers:
- The shared (server) database holding live records and the audit log
- The client-local database holding tombstones and local record mirrors
- The remote store endpoint the tombstone drain loop deletes against
- Read limits for the history and recently-deleted queries
- Tombstone retry ceiling and backoff
- The per-entity-type registry (ownership field, natural key, references)
"""

from functools import lru_cache
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EntityTypeConfig(BaseModel):
    """Per-entity-type configuration consumed by the core.

    Attributes:
        display_name: Human-readable name used in summaries.
        owner_field: Snapshot field holding the owning user's id.
        natural_key_field: Optional snapshot field that must be unique among
            live records of this type.
        references: Mapping of snapshot field -> referenced entity type. A
            restored record whose reference points at a record that is no
            longer live is rejected as a missing reference.
        field_defaults: Values applied to fields absent from an older snapshot
            when it is restored.
        title_field: Snapshot field used as the display title of an entry.
        related: Mapping of related entity type -> snapshot field of that type
            holding this record's id. Their entries join this record's
            combined history.
    """

    display_name: str
    owner_field: str
    natural_key_field: str | None = None
    references: dict[str, str] = Field(default_factory=dict)
    field_defaults: dict[str, Any] = Field(default_factory=dict)
    title_field: str | None = None
    related: dict[str, str] = Field(default_factory=dict)


def default_entity_types() -> dict[str, EntityTypeConfig]:
    """Return the registry of auditable record types."""
    return {
        "listing": EntityTypeConfig(
            display_name="Listing",
            owner_field="owned_by",
            references={"owned_by": "user"},
            title_field="address",
            related={"note": "parent_id"},
        ),
        "property": EntityTypeConfig(
            display_name="Property",
            owner_field="owned_by",
            references={"owned_by": "user"},
            title_field="address",
            related={"note": "parent_id"},
        ),
        "task": EntityTypeConfig(
            display_name="Task",
            owner_field="declared_by",
            references={"listing": "listing"},
            field_defaults={"status": "open"},
            title_field="title",
            related={"task_assignee": "task_id"},
        ),
        "activity": EntityTypeConfig(
            display_name="Activity",
            owner_field="declared_by",
            references={"listing": "listing"},
            field_defaults={"status": "open"},
            title_field="activity_type",
            related={"activity_assignee": "activity_id"},
        ),
        "user": EntityTypeConfig(
            display_name="Realtor",
            owner_field="id",
            natural_key_field="email",
            title_field="name",
        ),
        "note": EntityTypeConfig(
            display_name="Note",
            owner_field="created_by",
            title_field="content",
        ),
        "task_assignee": EntityTypeConfig(
            display_name="Task Assignment",
            owner_field="assigned_by",
            references={"task_id": "task"},
        ),
        "activity_assignee": EntityTypeConfig(
            display_name="Activity Assignment",
            owner_field="assigned_by",
            references={"activity_id": "activity"},
        ),
    }


class Settings(BaseSettings):
    """Settings for dispatch-history.

    Environment variable prefix: DISPATCH_HISTORY_
    """

    service_name: str = "dispatch-history"

    # -------------------------------------------------------------------------
    # Shared database: live records and the append-only audit log
    # -------------------------------------------------------------------------

    database_url: str = Field(
        default="sqlite+aiosqlite:///./dispatch_history.db",
        description="SQLAlchemy async URL of the shared store (live records + audit log).",
    )
    database_pool_size: int = Field(
        default=5,
        description="Connection pool size. Ignored for SQLite.",
    )
    database_max_overflow: int = Field(
        default=10,
        description="Max overflow connections above database_pool_size. Ignored for SQLite.",
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements. Snapshots must never reach the logs, so keep disabled.",
    )

    # -------------------------------------------------------------------------
    # Client-local store: tombstones survive process restart here
    # -------------------------------------------------------------------------

    local_store_url: str = Field(
        default="sqlite+aiosqlite:///./dispatch_local.db",
        description="SQLAlchemy async URL of the client-local tombstone database.",
    )
    remote_base_url: str = Field(
        default="http://localhost:8000/api/v1",
        description="Base URL of the shared store API the drain loop deletes against.",
    )
    remote_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for a single remote delete request.",
    )

    # -------------------------------------------------------------------------
    # Read limits
    # -------------------------------------------------------------------------

    history_default_limit: int = Field(default=50, ge=1)
    history_max_limit: int = Field(default=200, ge=1)
    recently_deleted_default_limit: int = Field(default=50, ge=1)
    recently_deleted_max_limit: int = Field(default=200, ge=1)
    recently_deleted_per_source_limit: int | None = Field(
        default=None,
        ge=1,
        description="Pre-limit applied to each entity type before the global merge. "
        "Unset means the requested limit.",
    )

    # -------------------------------------------------------------------------
    # Tombstone delivery
    # -------------------------------------------------------------------------

    tombstone_max_retries: int = Field(
        default=5,
        ge=1,
        description="Failed delivery attempts after which a tombstone is stuck.",
    )
    tombstone_retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    tombstone_retry_max_delay_seconds: float = Field(default=30.0, ge=0)

    # -------------------------------------------------------------------------
    # Entity registry
    # -------------------------------------------------------------------------

    entity_types: dict[str, EntityTypeConfig] = Field(default_factory=default_entity_types)

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_HISTORY_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
