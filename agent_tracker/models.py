"""
SQLAlchemy Models for Agent Tracker Database Schema

All models use UUID primary keys and portable column types so the same
schema runs on PostgreSQL in production and SQLite in tests.
"""
import enum
import uuid
from datetime import datetime, timezone
from uuid import UUID
from typing import Optional

from sqlalchemy import (
    Column, String, Text, DateTime, Integer, Boolean, JSON, Uuid,
    Enum as SAEnum, ForeignKey, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship, Mapped

from agent_tracker.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _clean_strings(values) -> list[str]:
    """Strip, drop empties and deduplicate while keeping order."""
    seen = set()
    cleaned = []
    for value in values or []:
        if not isinstance(value, str):
            continue
        value = value.strip()
        if value and value not in seen:
            seen.add(value)
            cleaned.append(value)
    return cleaned


# ============================================================================
# Enum Definitions
# ============================================================================

class ContentType(enum.Enum):
    """Kind of content a discovery points at"""
    ARTICLE = "Article"
    DISCUSSION = "Discussion"
    NEWS = "News"
    RESEARCH = "Research"
    TOOL = "Tool"
    OTHER = "Other"

    @classmethod
    def parse(cls, value) -> "ContentType":
        """Resolve a loose label to a member, falling back to OTHER."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            label = value.strip().lower()
            for member in cls:
                if member.value.lower() == label:
                    return member
        return cls.OTHER


class ContextEntryType(enum.Enum):
    """Origin of a project context entry"""
    USER_RESPONSE = "user_response"
    FEEDBACK = "feedback"
    QUESTION = "question"


# ============================================================================
# Entity Models
# ============================================================================

class Project(Base):
    """
    A domain of interest the pipeline searches on behalf of.

    Goals and interests are ordered, stripped and deduplicated.
    """
    __tablename__ = "projects"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = Column(String(200), nullable=False)
    description: Mapped[str] = Column(Text, nullable=False, default='')
    domain: Mapped[str] = Column(String(200), nullable=False, default='')
    goals: Mapped[list[str]] = Column(JSON, nullable=False, default=list)
    interests: Mapped[list[str]] = Column(JSON, nullable=False, default=list)
    progress: Mapped[str] = Column(String(100), nullable=False, default='Not Started')
    last_updated: Mapped[Optional[datetime]] = Column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    discoveries: Mapped[list["Discovery"]] = relationship(
        "Discovery",
        back_populates="project",
        cascade="all, delete-orphan"
    )
    context_entries: Mapped[list["ContextEntry"]] = relationship(
        "ContextEntry",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="ContextEntry.created_at"
    )

    def set_goals(self, goals):
        self.goals = _clean_strings(goals)

    def set_interests(self, interests):
        self.interests = _clean_strings(interests)

    def touch(self, when: Optional[datetime] = None):
        """Record that the pipeline looked at this project."""
        self.last_updated = when or utcnow()

    def context_snapshot(self) -> dict:
        """Phase/progress captured on each new discovery."""
        return {
            'progress': self.progress,
            'domain': self.domain,
        }

    def __repr__(self):
        return f"<Project(id={self.id}, name='{self.name}')>"


class Discovery(Base):
    """
    Persisted, deduplicated finding for a project.

    Identity is (project_id, source). Review state: new → viewed (one-way),
    hidden toggles independently, feedback implies viewed.
    """
    __tablename__ = "discoveries"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[UUID] = Column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False
    )
    source: Mapped[str] = Column(String(1000), nullable=False)

    # Scored content
    title: Mapped[str] = Column(String(500), nullable=False)
    description: Mapped[str] = Column(Text, nullable=False, default='')
    relevance_score: Mapped[int] = Column(Integer, nullable=False)
    categories: Mapped[list[str]] = Column(JSON, nullable=False, default=list)
    content_type: Mapped[ContentType] = Column(
        SAEnum(ContentType, native_enum=False, name="content_type", length=20),
        nullable=False,
        default=ContentType.OTHER
    )
    reasoning: Mapped[Optional[str]] = Column(Text, nullable=True)
    discovered_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    publication_date: Mapped[Optional[datetime]] = Column(DateTime(timezone=True), nullable=True)

    # Review state
    viewed: Mapped[bool] = Column(Boolean, nullable=False, default=False)
    viewed_at: Mapped[Optional[datetime]] = Column(DateTime(timezone=True), nullable=True)
    hidden: Mapped[bool] = Column(Boolean, nullable=False, default=False)
    presented: Mapped[bool] = Column(Boolean, nullable=False, default=False)
    feedback_useful: Mapped[Optional[bool]] = Column(Boolean, nullable=True)
    feedback_notes: Mapped[Optional[str]] = Column(Text, nullable=True)

    # Provenance
    search_query_used: Mapped[Optional[str]] = Column(String(500), nullable=True)
    search_context: Mapped[dict] = Column(JSON, nullable=False, default=dict)

    project: Mapped["Project"] = relationship("Project", back_populates="discoveries")

    __table_args__ = (
        UniqueConstraint("project_id", "source", name="uq_discovery_project_source"),
        CheckConstraint("relevance_score >= 1 AND relevance_score <= 10", name="ck_discovery_score_range"),
        Index("idx_discovery_project_discovered", "project_id", "discovered_at"),
        Index("idx_discovery_project_score", "project_id", "relevance_score"),
    )

    @property
    def feedback_state(self) -> str:
        if self.feedback_useful is None:
            return 'unset'
        return 'useful' if self.feedback_useful else 'not_useful'

    def to_dict(self) -> dict:
        return {
            'id': str(self.id),
            'project_id': str(self.project_id),
            'source': self.source,
            'title': self.title,
            'description': self.description,
            'relevance_score': self.relevance_score,
            'categories': list(self.categories or []),
            'content_type': self.content_type.value if self.content_type else ContentType.OTHER.value,
            'reasoning': self.reasoning,
            'discovered_at': _iso(self.discovered_at),
            'publication_date': _iso(self.publication_date),
            'viewed': self.viewed,
            'viewed_at': _iso(self.viewed_at),
            'hidden': self.hidden,
            'feedback': {
                'state': self.feedback_state,
                'notes': self.feedback_notes,
            },
            'search_query_used': self.search_query_used,
            'search_context': self.search_context or {},
        }

    def __repr__(self):
        return f"<Discovery(id={self.id}, source='{self.source[:50]}...', score={self.relevance_score})>"


class ContextEntry(Base):
    """User responses and feedback notes that inform later searches"""
    __tablename__ = "context_entries"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[UUID] = Column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False
    )
    entry_type: Mapped[ContextEntryType] = Column(
        SAEnum(ContextEntryType, native_enum=False, name="context_entry_type", length=20),
        nullable=False
    )
    content: Mapped[str] = Column(Text, nullable=False)
    created_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    project: Mapped["Project"] = relationship("Project", back_populates="context_entries")

    __table_args__ = (
        Index("idx_context_project_created", "project_id", "created_at"),
    )

    def __repr__(self):
        return f"<ContextEntry(type={self.entry_type.value}, content='{self.content[:40]}')>"


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None
