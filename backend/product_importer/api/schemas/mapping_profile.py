"""Mapping profile payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ProfileSettings(BaseModel):
    skip_unmapped: bool | None = None
    auto_detect: bool | None = None
    case_sensitive: bool | None = None
    trim_values: bool | None = None


def _check_mapping(value: dict[str, str] | None) -> dict[str, str] | None:
    if value is None:
        return value
    for source, target in value.items():
        if not source or not str(target).strip():
            raise ValueError("mapping entries need a non-empty source column and target field")
    return value


class MappingProfileCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    mapping: dict[str, str]
    settings: ProfileSettings | None = None
    is_default: bool = False
    is_shared: bool = False
    metadata: dict[str, Any] | None = None

    @field_validator("mapping")
    @classmethod
    def validate_mapping(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        return _check_mapping(value)


class MappingProfileUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    mapping: dict[str, str] | None = None
    settings: ProfileSettings | None = None
    is_default: bool | None = None
    is_shared: bool | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("mapping")
    @classmethod
    def validate_mapping(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        return _check_mapping(value)


class MappingProfileRead(BaseModel):
    id: str
    name: str
    description: str | None = None
    owner_id: str | None = None
    mapping: dict[str, str]
    settings: dict[str, bool]
    is_default: bool
    is_shared: bool
    is_builtin: bool = False
    metadata: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MappingProfileDuplicate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class MappingProfileImport(BaseModel):
    data: str = Field(..., description="Serialized profile produced by the export endpoint")
    name: str | None = None


class MappingProfileExport(BaseModel):
    profile_id: str
    data: str
