"""Unit tests for the artifact record models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.artifact_sync.budget import IMAGE_REGENERATION_BUDGET
from src.artifact_sync.config import SyncSettings
from src.artifact_sync.state import (
    MAX_IMAGE_ATTEMPTS,
    Artifact,
    ArtifactStatus,
    ArtifactType,
    BlogMeta,
    FinalImage,
    ShowcaseMeta,
    VisualsMetadata,
)


def test_metadata_discriminator_filled_from_artifact_type():
    artifact = Artifact.model_validate(
        {
            "id": "a1",
            "type": "showcase",
            "status": "ready",
            "metadata": {"problem": "Slow builds", "metrics": [{"label": "CI", "value": "4m"}]},
        }
    )
    assert isinstance(artifact.metadata, ShowcaseMeta)
    assert artifact.metadata.metrics[0].label == "CI"


def test_metadata_defaults_to_blog_shape():
    artifact = Artifact.model_validate({"id": "a1", "metadata": {"subtitle": "Async Python"}})
    assert artifact.type == ArtifactType.BLOG
    assert isinstance(artifact.metadata, BlogMeta)


def test_naive_timestamps_are_treated_as_utc():
    artifact = Artifact(id="a1", updated_at=datetime(2024, 1, 1, 9, 30))
    assert artifact.updated_at.tzinfo == timezone.utc


def test_tags_serialize_sorted():
    artifact = Artifact(id="a1", tags={"python", "async", "sync"})
    assert artifact.model_dump()["tags"] == ["async", "python", "sync"]


def test_is_newer_than():
    older = Artifact(id="a1", updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    newer = older.model_copy(update={"updated_at": older.updated_at + timedelta(seconds=1)})

    assert newer.is_newer_than(older)
    assert not older.is_newer_than(newer)
    assert not older.is_newer_than(older)
    assert older.is_newer_than(None)


def test_has_content():
    assert not Artifact(id="a1").has_content
    assert not Artifact(id="a1", content="").has_content
    assert Artifact(id="a1", content="Hello", status=ArtifactStatus.READY).has_content


def test_current_final_prefers_latest_generation():
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    visuals = VisualsMetadata(
        finals=[
            FinalImage(id="img-2", image_need_id="n1", generated_at=base + timedelta(minutes=5)),
            FinalImage(id="img-1", image_need_id="n1", generated_at=base),
            FinalImage(id="img-3", image_need_id="n2", generated_at=base),
        ]
    )
    assert visuals.current_final("n1").id == "img-2"
    assert visuals.current_final("n2").id == "img-3"
    assert visuals.current_final("missing") is None


def test_first_generation_counts_as_an_attempt():
    assert FinalImage(id="img-1", image_need_id="n1").generation_attempts == 1


def test_attempt_cap_is_shared_with_budget_and_settings():
    assert IMAGE_REGENERATION_BUDGET.max_attempts == MAX_IMAGE_ATTEMPTS
    assert SyncSettings.model_fields["max_image_attempts"].default == MAX_IMAGE_ATTEMPTS

    FinalImage(id="img-1", image_need_id="n1", generation_attempts=MAX_IMAGE_ATTEMPTS)
    with pytest.raises(ValidationError):
        FinalImage(id="img-1", image_need_id="n1", generation_attempts=MAX_IMAGE_ATTEMPTS + 1)
