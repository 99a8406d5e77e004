"""
Database models for solicitation intake.

Tables:
    organizations         - tenants
    projects              - import targets inside a tenant
    connections           - per-tenant provider credentials
    saved_searches        - recurring catalog queries
    opportunities         - canonical solicitation records
    ingestion_documents   - tracked documents moving through OCR ingestion
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from rfp_intake.core.database.base import UUID, Base


class Organization(Base):
    """A tenant. Saved searches, projects and credentials are scoped to one."""

    __tablename__ = "organizations"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name={self.name})>"


class Project(Base):
    """
    Import target inside an organization.

    The most recently created project is the organization's default target
    for scheduled auto-imports.
    """

    __tablename__ = "projects"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_projects_org_created", "organization_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, name={self.name})>"


class Connection(Base):
    """
    Per-organization provider credentials.

    connection_type is ``sam_gov`` or ``dibbs``; the key lives in
    ``config["api_key"]``.
    """

    __tablename__ = "connections"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    connection_type = Column(String(50), nullable=False)
    config = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_connections_org_type", "organization_id", "connection_type"),
    )

    def __repr__(self) -> str:
        return f"<Connection(id={self.id}, type={self.connection_type}, active={self.is_active})>"


class SavedSearch(Base):
    """
    A tenant's recurring catalog query.

    ``criteria`` holds provider-specific search fields (keywords, NAICS/PSC
    codes, set-aside code, date bounds, limit, optional dollarRange).
    Only ``last_run_at`` is written by the scheduler.
    """

    __tablename__ = "saved_searches"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    source = Column(String(20), nullable=False, default="SAM_GOV")
    criteria = Column(JSON, nullable=False, default=dict)
    frequency = Column(String(20), nullable=False, default="DAILY")
    auto_import = Column(Boolean, default=False, nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)
    last_run_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_saved_searches_org_enabled", "organization_id", "is_enabled"),
    )

    def __repr__(self) -> str:
        return f"<SavedSearch(id={self.id}, name={self.name}, frequency={self.frequency})>"


class Opportunity(Base):
    """
    Canonical solicitation record.

    Unique on (organization_id, project_id, source_system_id) so rediscovery
    updates in place.
    """

    __tablename__ = "opportunities"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    project_id = Column(UUID(), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    source = Column(String(20), nullable=False)
    source_system_id = Column(String(255), nullable=False)

    title = Column(Text, nullable=True)
    solicitation_number = Column(String(255), nullable=True)
    notice_type = Column(String(100), nullable=True)
    posted_date = Column(DateTime, nullable=True)
    response_deadline = Column(DateTime, nullable=True)
    naics_code = Column(String(20), nullable=True)
    psc_code = Column(String(20), nullable=True)
    set_aside_code = Column(String(50), nullable=True)
    agency_name = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    base_and_all_options_value = Column(Float, nullable=True)
    active = Column(Boolean, nullable=True)
    ui_link = Column(String(1000), nullable=True)
    raw_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index(
            "ux_opportunities_dedup",
            "organization_id", "project_id", "source_system_id",
            unique=True,
        ),
    )

    def __repr__(self) -> str:
        return f"<Opportunity(id={self.id}, source_system_id={self.source_system_id})>"


class IngestionDocument(Base):
    """
    A document tracked through OCR ingestion.

    ``resume_token`` is set only while ``status == AWAITING_OCR``; every
    status write goes through DocumentService.transition which maintains
    that invariant.
    """

    __tablename__ = "ingestion_documents"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        UUID(), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    project_id = Column(UUID(), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    opportunity_id = Column(
        UUID(), ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False
    )

    storage_bucket = Column(String(255), nullable=False)
    storage_key = Column(String(1024), nullable=True)
    text_key = Column(String(1024), nullable=True)
    original_file_name = Column(String(500), nullable=False)
    mime_type = Column(String(255), nullable=True)
    source_document_id = Column(String(255), nullable=True)

    status = Column(String(32), nullable=False, default="UPLOADED", index=True)
    resume_token = Column(String(255), nullable=True)
    execution_ref = Column(String(255), nullable=True)
    ocr_job_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)
    total_questions = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_ingestion_documents_project_opp", "project_id", "opportunity_id"),
    )

    def __repr__(self) -> str:
        return f"<IngestionDocument(id={self.id}, status={self.status})>"
