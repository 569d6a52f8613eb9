"""Backend API client for artifact reads and pipeline actions.

Includes retry logic for idempotent requests only.
"""

from src.artifact_sync.backend.client import ArtifactAPIClient, BackendAPIError

__all__ = [
    "ArtifactAPIClient",
    "BackendAPIError",
]
