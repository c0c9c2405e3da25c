"""
Pydantic schemas for validating store inputs.

Inputs are validated before any mutation starts, so a rejected payload never
leaves a partial write behind.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from config import Config
from errors import ValidationError, format_pydantic_error

ScopeName = Literal["read", "write", "admin", "mcp"]
GraphMode = Literal["relations", "timeline", "versions"]

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_model(model_cls: Type[ModelT], data: Any) -> ModelT:
    """
    Validate ``data`` into ``model_cls``.

    Raises:
        ValidationError: If the payload is malformed
    """
    if isinstance(data, model_cls):
        return data
    if data is None:
        data = {}
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(format_pydantic_error(exc)) from None


def _clean_tags(tags: List[str]) -> List[str]:
    """Strip and de-duplicate tags case-sensitively, keeping first-seen order."""
    seen = set()
    cleaned = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.add(tag)
            cleaned.append(tag)
    return cleaned


class FileInput(BaseModel):
    """A file submitted with a create or update."""

    model_config = ConfigDict(extra="ignore")

    filename: str = Field(..., min_length=1, max_length=Config.MAX_FILENAME_LENGTH)
    content: str = Field("", max_length=Config.MAX_FILE_CONTENT_LENGTH)
    language: Optional[str] = Field(None, max_length=50)

    @field_validator("filename")
    @classmethod
    def filename_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Filename is required")
        return value


class _StashFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    @field_validator("tags", check_fields=False)
    @classmethod
    def dedupe_tags(cls, value):
        if value is None:
            return value
        for tag in value:
            if len(tag) > Config.MAX_TAG_LENGTH:
                raise ValueError(f"Tags must be {Config.MAX_TAG_LENGTH} characters or less")
        return _clean_tags(value)

    @field_validator("metadata", check_fields=False)
    @classmethod
    def limit_metadata(cls, value):
        if value is not None and len(value) > Config.MAX_METADATA_KEYS:
            raise ValueError(f"Metadata cannot have more than {Config.MAX_METADATA_KEYS} keys")
        return value

    @field_validator("files", check_fields=False)
    @classmethod
    def unique_filenames(cls, value):
        if value is None:
            return value
        names = [f.filename for f in value]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate filenames: {', '.join(duplicates)}")
        return value


class StashCreate(_StashFields):
    """Schema for creating a stash; at least one file is required."""

    name: str = Field("", max_length=Config.MAX_NAME_LENGTH)
    description: str = Field("", max_length=Config.MAX_DESCRIPTION_LENGTH)
    tags: List[str] = Field(default_factory=list, max_length=Config.MAX_TAGS)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    files: List[FileInput] = Field(..., min_length=1, max_length=Config.MAX_FILES)

    @field_validator("name", "description", mode="before")
    @classmethod
    def none_to_empty(cls, value):
        return "" if value is None else value


class StashUpdate(_StashFields):
    """
    Schema for a partial update.

    Only fields present in the payload are applied (see ``model_fields_set``);
    present list/map fields replace the stored value wholesale. An explicit
    ``null`` is rejected rather than read as "leave unchanged".
    """

    name: str = Field(None, max_length=Config.MAX_NAME_LENGTH)
    description: str = Field(None, max_length=Config.MAX_DESCRIPTION_LENGTH)
    tags: List[str] = Field(None, max_length=Config.MAX_TAGS)
    metadata: Dict[str, Any] = Field(None)
    files: List[FileInput] = Field(None, min_length=1, max_length=Config.MAX_FILES)
    archived: bool = Field(None)

    def present(self, field: str) -> bool:
        return field in self.model_fields_set


class ListQuery(BaseModel):
    """Filters and paging for stash listing and search."""

    model_config = ConfigDict(extra="forbid")

    tag: Optional[str] = None
    archived: Optional[bool] = None
    page: int = Field(1, ge=1)
    limit: int = Field(Config.DEFAULT_PAGE_SIZE, ge=1, le=Config.MAX_PAGE_SIZE)


class TagGraphQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tag: Optional[str] = None
    depth: int = 1
    min_weight: Optional[int] = Field(None, ge=1)
    min_count: Optional[int] = Field(None, ge=1)
    limit: Optional[int] = Field(None, ge=1)
    include_archived: bool = True

    @field_validator("depth", mode="before")
    @classmethod
    def default_depth(cls, value):
        return 1 if value is None else value


class StashGraphQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: GraphMode = "relations"
    since: Optional[str] = None
    until: Optional[str] = None
    tag: Optional[str] = None
    limit: int = Field(Config.GRAPH_NODE_LIMIT, ge=0)
    include_versions: bool = False
    min_shared_tags: int = Field(1, ge=1)


class TokenCreate(BaseModel):
    """Schema for minting an API token."""

    model_config = ConfigDict(extra="forbid")

    label: str = Field("", max_length=200)
    scopes: List[ScopeName] = Field(default_factory=lambda: ["read"], min_length=1)

    @field_validator("label", mode="before")
    @classmethod
    def none_label(cls, value):
        return "" if value is None else value

    @model_validator(mode="after")
    def dedupe_scopes(self):
        order = ["read", "write", "admin", "mcp"]
        self.scopes = [scope for scope in order if scope in self.scopes]
        return self


# Bulk import rows -----------------------------------------------------------------
def _decode_json(value):
    """Exports from older releases store tags and metadata as JSON text."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            raise ValueError("Expected a JSON value") from None
    return value


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class _ImportRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("tags", "metadata", "change_summary", mode="before", check_fields=False)
    @classmethod
    def decode_json(cls, value):
        return _decode_json(value)

    @field_validator("name", "description", "content", "language", mode="before", check_fields=False)
    @classmethod
    def none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("created_at", "updated_at", check_fields=False)
    @classmethod
    def to_naive_utc(cls, value):
        return _naive_utc(value)


class ImportStash(_ImportRow):
    id: str = Field(..., min_length=1, max_length=36)
    name: str = Field("", max_length=Config.MAX_NAME_LENGTH)
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    archived: bool = False
    version: int = Field(1, ge=1)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, value):
        return _clean_tags(value)

    @field_validator("archived", mode="before")
    @classmethod
    def none_not_archived(cls, value):
        return False if value is None else value


class ImportFile(_ImportRow):
    stash_id: str
    filename: str = Field(..., min_length=1, max_length=Config.MAX_FILENAME_LENGTH)
    content: str = ""
    language: str = ""
    sort_order: int = 0


class ImportVersion(_ImportRow):
    id: str
    stash_id: str
    version: int = Field(..., ge=1)
    name: str = ""
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_by: str = Field("api", max_length=20)
    change_summary: Dict[str, Any] = Field(default_factory=dict)
    restored_from: Optional[int] = None
    created_at: Optional[datetime] = None

    @field_validator("created_by", mode="before")
    @classmethod
    def default_source(cls, value):
        return value or "api"


class ImportVersionFile(_ImportRow):
    version_id: str
    filename: str = Field(..., min_length=1, max_length=Config.MAX_FILENAME_LENGTH)
    content: str = ""
    language: str = ""
    sort_order: int = 0


class ImportBundle(BaseModel):
    """The relational snapshot produced by ``export_all_data``."""

    model_config = ConfigDict(extra="ignore")

    stashes: List[ImportStash]
    stash_files: List[ImportFile] = Field(default_factory=list)
    stash_versions: List[ImportVersion] = Field(default_factory=list)
    stash_version_files: List[ImportVersionFile] = Field(default_factory=list)

    @field_validator("stash_files", "stash_versions", "stash_version_files", mode="before")
    @classmethod
    def none_to_list(cls, value):
        return [] if value is None else value
