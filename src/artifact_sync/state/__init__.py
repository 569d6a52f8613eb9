"""Artifact state models and pipeline transition rules.

This module describes the artifact record and the status graph:
- draft → research → foundations → foundations_approval → writing
- → humanity_checking → creating_visuals → ready → published
- published → ready when published content is edited
"""

from src.artifact_sync.state.models import (
    APPROVAL_GATED_STAGES,
    EDITOR_LOCKED_STAGES,
    GENERATION_STAGES,
    MAX_IMAGE_ATTEMPTS,
    PROCESSING_STAGES,
    VALID_TRANSITIONS,
    Artifact,
    ArtifactMetadata,
    ArtifactStatus,
    ArtifactType,
    BlogMeta,
    FinalImage,
    ImageNeed,
    ResearchEntry,
    ShowcaseMeta,
    ShowcaseMetric,
    SocialPostMeta,
    Tone,
    VisualsMetadata,
    allowed_next,
    is_approval_gated,
    is_editor_locked,
    is_legal_transition,
    is_processing_stage,
)
from src.artifact_sync.state.transitions import is_demotion, validate_transition

__all__ = [
    # Models
    "Artifact",
    "ArtifactMetadata",
    "ArtifactStatus",
    "ArtifactType",
    "BlogMeta",
    "FinalImage",
    "ImageNeed",
    "ResearchEntry",
    "ShowcaseMeta",
    "ShowcaseMetric",
    "SocialPostMeta",
    "Tone",
    "VisualsMetadata",
    "MAX_IMAGE_ATTEMPTS",
    # Transition graph
    "APPROVAL_GATED_STAGES",
    "EDITOR_LOCKED_STAGES",
    "GENERATION_STAGES",
    "PROCESSING_STAGES",
    "VALID_TRANSITIONS",
    "allowed_next",
    "is_approval_gated",
    "is_editor_locked",
    "is_legal_transition",
    "is_processing_stage",
    "is_demotion",
    "validate_transition",
]
