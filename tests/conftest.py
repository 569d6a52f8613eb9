"""Pytest configuration for all tests."""

from hypothesis import HealthCheck, settings

# Engine tests drive real event loops with short sleeps
settings.register_profile(
    "artifact_sync",
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.load_profile("artifact_sync")
