"""Command-line entry point for watching an artifact.

Usage:
    python -m src.artifact_sync.main watch <artifact_id> [--generation-requested]

Reads configuration from ARTIFACT_SYNC_* environment variables, starts a
PipelineSyncEngine and logs every snapshot until interrupted.
"""

import argparse
import asyncio
import logging
from typing import List, Optional

from src.artifact_sync.backend.client import ArtifactAPIClient
from src.artifact_sync.config import SyncSettings, get_settings
from src.artifact_sync.engine import PipelineSyncEngine, SyncSnapshot
from src.artifact_sync.errors import SyncError
from src.artifact_sync.events.emitter import create_event_emitter
from src.artifact_sync.realtime.channel import SupabaseRealtimeChannel

logger = logging.getLogger(__name__)


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: SyncSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Sync configuration:")
    logger.info(f"  Backend URL: {settings.backend_url}")
    logger.info(f"  API Token: {_redact_secret(settings.api_token)}")
    logger.info(f"  Realtime URL: {settings.realtime_url or '<polling only>'}")
    logger.info(f"  Realtime API Key: {_redact_secret(settings.realtime_api_key)}")
    logger.info(f"  Autosave Debounce: {settings.autosave_debounce_ms} ms")
    logger.info(
        f"  Poll Intervals: processing={settings.processing_poll_interval_ms} ms, "
        f"draft={settings.draft_poll_interval_ms} ms"
    )
    logger.info(f"  Max Image Attempts: {settings.max_image_attempts}")
    logger.info(f"  Event Sinks: {[sink.value for sink in settings.event_sinks]}")


def build_engine(
    settings: SyncSettings,
    artifact_id: str,
    client: ArtifactAPIClient,
) -> PipelineSyncEngine:
    """Wire an engine from settings."""
    channel = None
    if settings.realtime_url and settings.realtime_api_key:
        channel = SupabaseRealtimeChannel(
            url=settings.realtime_url,
            api_key=settings.realtime_api_key,
            access_token=settings.api_token,
            heartbeat_seconds=settings.realtime_heartbeat_seconds,
            join_timeout_seconds=settings.realtime_join_timeout_seconds,
        )
    return PipelineSyncEngine(
        artifact_id=artifact_id,
        client=client,
        channel=channel,
        settings=settings,
        event_emitter=create_event_emitter(settings.event_sinks),
    )


def _log_snapshot(snapshot: SyncSnapshot) -> None:
    artifact = snapshot.artifact
    logger.info(
        "Snapshot: status=%s processing=%s unsaved=%s gate=%s poll=%s degraded=%s error=%s",
        artifact.status.value if artifact else None,
        snapshot.is_processing,
        snapshot.has_unsaved_changes,
        snapshot.active_gate,
        snapshot.poll_interval_ms,
        snapshot.channel_degraded,
        snapshot.last_error.kind.value if snapshot.last_error else None,
    )


async def watch(
    settings: SyncSettings,
    artifact_id: str,
    generation_requested: bool = False,
) -> None:
    """Watch an artifact until cancelled."""
    async with ArtifactAPIClient(
        base_url=settings.backend_url,
        token=settings.api_token,
        max_retries=settings.http_max_retries,
        base_delay=settings.http_base_delay_seconds,
        max_delay=settings.http_max_delay_seconds,
        timeout=settings.http_timeout_seconds,
    ) as client:
        engine = build_engine(settings, artifact_id, client)
        engine.subscribe(_log_snapshot)
        try:
            try:
                await engine.start()
            except SyncError as exc:
                logger.warning("Initial fetch failed: %s", exc.message)
            if generation_requested:
                engine.mark_generation_requested()
            await asyncio.Event().wait()
        finally:
            await engine.dispose()


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="artifact-sync",
        description="Synchronise an artifact with the content pipeline backend.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser("watch", help="Log snapshots for an artifact")
    watch_parser.add_argument("artifact_id", help="Artifact identifier")
    watch_parser.add_argument(
        "--generation-requested",
        action="store_true",
        help="Poll a draft artifact until generation starts",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    _log_configuration(settings)

    if args.command == "watch":
        try:
            asyncio.run(watch(settings, args.artifact_id, args.generation_requested))
        except KeyboardInterrupt:
            logger.info("Stopped watching %s", args.artifact_id)


if __name__ == "__main__":
    main()
