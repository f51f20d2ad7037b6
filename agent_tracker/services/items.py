"""
Pipeline item types.

CandidateItem is what extraction and providers produce; ClassifiedItem is a
candidate annotated by the relevance classifier. Neither is persisted
directly.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from agent_tracker.models import ContentType

MIN_SCORE = 1
MAX_SCORE = 10


def clamp_score(value) -> int:
    """Coerce any numeric-ish value into the 1-10 relevance range."""
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return 5
    return max(MIN_SCORE, min(MAX_SCORE, score))


@dataclass
class CandidateItem:
    """Unscored content pulled from a raw source."""
    title: str
    description: str
    source: str
    publication_date: Optional[datetime] = None
    search_query: Optional[str] = None
    category_hint: Optional[str] = None
    popularity_hint: Optional[str] = None
    content_type_hint: Optional[str] = None


@dataclass
class ClassifiedItem:
    """Candidate plus relevance annotations."""
    candidate: CandidateItem
    relevance_score: int
    categories: list[str] = field(default_factory=list)
    content_type: ContentType = ContentType.OTHER
    reasoning: str = ''

    def __post_init__(self):
        self.relevance_score = clamp_score(self.relevance_score)
        self.content_type = ContentType.parse(self.content_type)
        self.categories = [str(c).strip() for c in self.categories or [] if str(c).strip()]

    @property
    def source(self) -> str:
        return self.candidate.source

    @property
    def title(self) -> str:
        return self.candidate.title

    @property
    def description(self) -> str:
        return self.candidate.description

    @property
    def publication_date(self) -> Optional[datetime]:
        return self.candidate.publication_date

    @property
    def search_query(self) -> Optional[str]:
        return self.candidate.search_query


@dataclass
class ProjectContext:
    """Read-only view of a project handed to providers and the classifier."""
    project_id: Optional[str]
    name: str
    domain: str
    goals: list[str] = field(default_factory=list)
    interests: list[str] = field(default_factory=list)
    progress: str = 'Not Started'
    description: str = ''
    extra: str = ''

    @classmethod
    def from_project(cls, project) -> "ProjectContext":
        return cls(
            project_id=str(project.id),
            name=project.name,
            domain=project.domain or '',
            goals=list(project.goals or []),
            interests=list(project.interests or []),
            progress=project.progress or 'Not Started',
            description=project.description or '',
        )

    def with_extra(self, extra: str) -> "ProjectContext":
        """Copy carrying additional free-text context (e.g. newsletter sections)."""
        return ProjectContext(
            project_id=self.project_id,
            name=self.name,
            domain=self.domain,
            goals=list(self.goals),
            interests=list(self.interests),
            progress=self.progress,
            description=self.description,
            extra=extra,
        )

    def to_prompt(self) -> str:
        lines = [
            f"Project: {self.name}",
            f"Domain: {self.domain or 'unspecified'}",
            f"Goals: {', '.join(self.goals) or 'none listed'}",
            f"Interests: {', '.join(self.interests) or 'none listed'}",
            f"Current progress: {self.progress}",
        ]
        if self.description:
            lines.append(f"Description: {self.description}")
        if self.extra:
            lines.append(f"Additional context:\n{self.extra}")
        return '\n'.join(lines)
