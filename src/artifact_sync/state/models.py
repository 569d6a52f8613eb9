"""Artifact state models and the pipeline transition graph.

This module defines the data models shared by every sync component:
- ArtifactStatus: Enum of all pipeline stages
- Artifact: Client-side copy of an artifact record
- ImageNeed / FinalImage / VisualsMetadata: Image workflow records
- SocialPostMeta / BlogMeta / ShowcaseMeta: Type-specific metadata union
- VALID_TRANSITIONS: Map defining allowed status transitions

The models use Pydantic for validation so backend JSON can be parsed with
``Artifact.model_validate`` directly.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator


class ArtifactStatus(str, Enum):
    """Pipeline stages that an artifact progresses through.

    Stage Flow:
        draft → [interviewing →] research → foundations → [skeleton →]
        foundations_approval → writing → humanity_checking
        → creating_visuals → ready → published

    ``published → ready`` is the only backward edge; it fires when the user
    edits published content.

    Attributes:
        DRAFT: Initial state, editable, nothing generated yet.
        INTERVIEWING: AI interviewing the user about a showcase.
        RESEARCH: AI gathering research sources.
        FOUNDATIONS: AI analysing writing characteristics.
        SKELETON: Structural skeleton proposed, awaiting review (legacy path).
        FOUNDATIONS_APPROVAL: Skeleton ready, waiting for user approval.
        WRITING: AI writing content.
        HUMANITY_CHECKING: AI humanizing content.
        CREATING_VISUALS: AI identifying and generating images.
        READY: Content ready, editable, can be published.
        PUBLISHED: Published; editing returns it to ready.
    """

    DRAFT = "draft"
    INTERVIEWING = "interviewing"
    RESEARCH = "research"
    FOUNDATIONS = "foundations"
    SKELETON = "skeleton"
    FOUNDATIONS_APPROVAL = "foundations_approval"
    WRITING = "writing"
    HUMANITY_CHECKING = "humanity_checking"
    CREATING_VISUALS = "creating_visuals"
    READY = "ready"
    PUBLISHED = "published"


class ArtifactType(str, Enum):
    """Kinds of artifact the authoring tool produces."""

    SOCIAL_POST = "social_post"
    BLOG = "blog"
    SHOWCASE = "showcase"


class Tone(str, Enum):
    """Style setting applied to generated content."""

    FORMAL = "formal"
    CASUAL = "casual"
    PROFESSIONAL = "professional"
    CONVERSATIONAL = "conversational"
    TECHNICAL = "technical"
    FRIENDLY = "friendly"
    AUTHORITATIVE = "authoritative"
    HUMOROUS = "humorous"


# =============================================================================
# Type-specific metadata
# =============================================================================


class SocialPostMeta(BaseModel):
    """Metadata for social posts (LinkedIn, Twitter, etc.)."""

    type: Literal["social_post"] = "social_post"
    platform: Optional[Literal["linkedin", "twitter", "other"]] = None
    hashtags: List[str] = Field(default_factory=list)
    target_audience: Optional[str] = None
    character_count: Optional[int] = Field(default=None, ge=0)
    engagement_hook: Optional[str] = None


class BlogMeta(BaseModel):
    """Metadata for blog posts."""

    type: Literal["blog"] = "blog"
    platform: Optional[Literal["medium", "substack", "custom", "other"]] = None
    subtitle: Optional[str] = None
    target_audience: Optional[str] = None
    word_count: Optional[int] = Field(default=None, ge=0)
    reading_time_minutes: Optional[int] = Field(default=None, ge=0)
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None


class ShowcaseMetric(BaseModel):
    label: str
    value: str
    improvement: Optional[str] = None


class ShowcaseMeta(BaseModel):
    """Metadata for case studies / showcases."""

    type: Literal["showcase"] = "showcase"
    company: Optional[str] = None
    role: Optional[str] = None
    timeframe: Optional[str] = None
    problem: Optional[str] = None
    approach: Optional[str] = None
    results: Optional[str] = None
    learnings: Optional[str] = None
    metrics: List[ShowcaseMetric] = Field(default_factory=list)


ArtifactMetadata = Annotated[
    Union[SocialPostMeta, BlogMeta, ShowcaseMeta],
    Field(discriminator="type"),
]


# =============================================================================
# Image workflow
# =============================================================================

# Generations allowed per image need, the first one included
MAX_IMAGE_ATTEMPTS = 3


class ImageNeed(BaseModel):
    """An AI-identified slot that needs an image.

    ``approved`` is controlled by the user and independent of the pipeline
    stage; only approved needs get a final image.
    """

    id: str = Field(..., min_length=1)
    description: str = ""
    purpose: str = "illustration"
    style: str = "professional"
    placement_after: Optional[str] = None
    approved: bool = False


class FinalImage(BaseModel):
    """A generated image bound to exactly one ImageNeed.

    Attributes:
        id: Image identifier used by the regenerate endpoint.
        image_need_id: The need this image fulfils.
        url: Public URL of the image, if stored.
        generation_attempts: Number of generations so far (never decremented).
        generated_at: When the image was produced.
    """

    id: str = Field(..., min_length=1)
    image_need_id: str = Field(..., min_length=1)
    url: Optional[str] = None
    generation_attempts: int = Field(default=1, ge=0, le=MAX_IMAGE_ATTEMPTS)
    generated_at: Optional[datetime] = None


class VisualsMetadata(BaseModel):
    """Image needs and generated finals stored on the artifact."""

    needs: List[ImageNeed] = Field(default_factory=list)
    finals: List[FinalImage] = Field(default_factory=list)

    def need(self, need_id: str) -> Optional[ImageNeed]:
        for need in self.needs:
            if need.id == need_id:
                return need
        return None

    def current_final(self, need_id: str) -> Optional[FinalImage]:
        """Return the final image currently displayed for a need.

        A regenerated image supersedes earlier ones: the latest
        ``generated_at`` wins, ties (or missing timestamps) fall back to
        list order.
        """
        candidates = [
            (index, final)
            for index, final in enumerate(self.finals)
            if final.image_need_id == need_id
        ]
        if not candidates:
            return None
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return max(
            candidates,
            key=lambda item: (_as_aware(item[1].generated_at) or epoch, item[0]),
        )[1]

    def pending_needs(self) -> List[ImageNeed]:
        """Needs that have not been approved yet."""
        return [need for need in self.needs if not need.approved]


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Artifact
# =============================================================================


class Artifact(BaseModel):
    """Client-side copy of an artifact record.

    ``updated_at`` is assigned by the server and is the version marker used
    to order updates arriving from different channels.
    """

    id: str = Field(..., min_length=1, description="Opaque, immutable identifier")

    type: ArtifactType = Field(default=ArtifactType.BLOG)

    status: ArtifactStatus = Field(default=ArtifactStatus.DRAFT)

    title: Optional[str] = None

    content: Optional[str] = Field(
        default=None,
        description="Text payload; null until a stage has produced content",
    )

    tone: Tone = Field(default=Tone.PROFESSIONAL)

    tags: Set[str] = Field(default_factory=set)

    metadata: Optional[ArtifactMetadata] = None

    visuals_metadata: Optional[VisualsMetadata] = None

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Server-assigned version marker",
    )

    published_at: Optional[datetime] = None

    published_url: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_metadata(cls, data: Any) -> Any:
        """Fill in the metadata discriminator from the artifact type.

        The backend stores metadata without a ``type`` key, keyed implicitly
        by the artifact's own type.
        """
        if not isinstance(data, dict):
            return data
        metadata = data.get("metadata")
        if isinstance(metadata, dict) and "type" not in metadata:
            artifact_type = data.get("type") or ArtifactType.BLOG.value
            if isinstance(artifact_type, ArtifactType):
                artifact_type = artifact_type.value
            data = {**data, "metadata": {**metadata, "type": artifact_type}}
        return data

    @field_validator("updated_at", "published_at")
    @classmethod
    def _assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_aware(v)

    @field_serializer("tags")
    def _serialize_tags(self, tags: Set[str]) -> List[str]:
        return sorted(tags)

    @property
    def has_content(self) -> bool:
        return bool(self.content)

    def is_newer_than(self, other: Optional["Artifact"]) -> bool:
        """Check whether this record supersedes ``other``.

        Args:
            other: The currently applied record, or None.

        Returns:
            bool: True when ``other`` is None or has an older ``updated_at``.
        """
        if other is None:
            return True
        return self.updated_at > other.updated_at


class ResearchEntry(BaseModel):
    """A research source attached to an artifact."""

    id: str = Field(..., min_length=1)
    source_type: str = "other"
    source_name: str = ""
    source_url: Optional[str] = None
    excerpt: str = ""
    relevance_score: Optional[float] = None


# Valid status transitions map
#
# Key design decisions:
# - The main chain is linear; INTERVIEWING and SKELETON are side paths
# - PUBLISHED → READY is the only backward edge (edit after publish)
# - No self transitions
VALID_TRANSITIONS: Dict[ArtifactStatus, FrozenSet[ArtifactStatus]] = {
    ArtifactStatus.DRAFT: frozenset(
        {ArtifactStatus.RESEARCH, ArtifactStatus.INTERVIEWING}
    ),
    ArtifactStatus.INTERVIEWING: frozenset({ArtifactStatus.RESEARCH}),
    ArtifactStatus.RESEARCH: frozenset({ArtifactStatus.FOUNDATIONS}),
    ArtifactStatus.FOUNDATIONS: frozenset(
        {ArtifactStatus.FOUNDATIONS_APPROVAL, ArtifactStatus.SKELETON}
    ),
    # Gated stages are left only through the foundations approval gate
    ArtifactStatus.SKELETON: frozenset(
        {ArtifactStatus.FOUNDATIONS_APPROVAL, ArtifactStatus.WRITING}
    ),
    ArtifactStatus.FOUNDATIONS_APPROVAL: frozenset({ArtifactStatus.WRITING}),
    ArtifactStatus.WRITING: frozenset({ArtifactStatus.HUMANITY_CHECKING}),
    ArtifactStatus.HUMANITY_CHECKING: frozenset({ArtifactStatus.CREATING_VISUALS}),
    ArtifactStatus.CREATING_VISUALS: frozenset({ArtifactStatus.READY}),
    ArtifactStatus.READY: frozenset({ArtifactStatus.PUBLISHED}),
    ArtifactStatus.PUBLISHED: frozenset({ArtifactStatus.READY}),
}

# Stages where the AI backend is working; polled and editor-locked
PROCESSING_STAGES: FrozenSet[ArtifactStatus] = frozenset(
    {
        ArtifactStatus.RESEARCH,
        ArtifactStatus.FOUNDATIONS,
        ArtifactStatus.WRITING,
        ArtifactStatus.HUMANITY_CHECKING,
        ArtifactStatus.CREATING_VISUALS,
    }
)

# Stages that lock editing in the UI. INTERVIEWING is a chat-driven stage,
# not polled, but the editor stays locked while it runs.
EDITOR_LOCKED_STAGES: FrozenSet[ArtifactStatus] = PROCESSING_STAGES | {
    ArtifactStatus.INTERVIEWING
}

# Processing complete, progression waits for an explicit approval
APPROVAL_GATED_STAGES: FrozenSet[ArtifactStatus] = frozenset(
    {ArtifactStatus.SKELETON, ArtifactStatus.FOUNDATIONS_APPROVAL}
)

# Stages in which the backend owns and rewrites ``content``
GENERATION_STAGES: FrozenSet[ArtifactStatus] = frozenset(
    {
        ArtifactStatus.WRITING,
        ArtifactStatus.HUMANITY_CHECKING,
        ArtifactStatus.CREATING_VISUALS,
    }
)


def allowed_next(from_stage: ArtifactStatus) -> FrozenSet[ArtifactStatus]:
    """Return the stages reachable from ``from_stage`` in one step.

    Example:
        >>> sorted(s.value for s in allowed_next(ArtifactStatus.DRAFT))
        ['interviewing', 'research']
    """
    return VALID_TRANSITIONS.get(from_stage, frozenset())


def is_legal_transition(from_stage: ArtifactStatus, to_stage: ArtifactStatus) -> bool:
    """Check if a status transition is an edge of the pipeline graph.

    Example:
        >>> is_legal_transition(ArtifactStatus.DRAFT, ArtifactStatus.RESEARCH)
        True
        >>> is_legal_transition(ArtifactStatus.READY, ArtifactStatus.READY)
        False
    """
    return to_stage in allowed_next(from_stage)


def is_processing_stage(stage: ArtifactStatus) -> bool:
    """True while the backend is actively generating for this stage."""
    return stage in PROCESSING_STAGES


def is_editor_locked(stage: ArtifactStatus) -> bool:
    """True when the UI must lock editing affordances."""
    return stage in EDITOR_LOCKED_STAGES


def is_approval_gated(stage: ArtifactStatus) -> bool:
    return stage in APPROVAL_GATED_STAGES
