"""Reusable column-mapping configurations owned by admin users."""

import uuid

from sqlalchemy import Boolean, Column, Index, String, Text, text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from product_importer.db.base import Base, JSONType


class MappingProfile(Base):
    __tablename__ = "mapping_profiles"

    id = Column(String(64), primary_key=True, default=lambda: f"mp_{uuid.uuid4().hex}")
    name = Column(String(255), nullable=False)
    description = Column(Text)
    owner_id = Column(String(64), nullable=False, index=True)
    mapping = Column(JSONType, nullable=False, default=dict)
    settings = Column(JSONType, nullable=False, default=dict)
    is_default = Column(Boolean, nullable=False, default=False)
    is_shared = Column(Boolean, nullable=False, default=False)
    meta = Column(JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # At most one default per owner
    __table_args__ = (
        Index(
            "uq_mapping_profiles_owner_default",
            "owner_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )
