"""Backend API client for artifact reads and pipeline actions.

This module provides an async wrapper around the content backend for:
- Fetching and patching the artifact record
- Approving foundations (skeleton)
- Approving image descriptions and starting image generation
- Regenerating a single image
- Listing, adding and deleting research entries

Idempotent requests (GET, PATCH, DELETE) retry transient failures with
exponential backoff and full jitter. Approval, generation and regeneration
POSTs are sent exactly once: a duplicate would start duplicate backend work.
"""

import asyncio
import logging
import random
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import httpx

from src.artifact_sync.errors import NetworkFailureError
from src.artifact_sync.state.models import Artifact, ArtifactStatus, ResearchEntry


logger = logging.getLogger(__name__)


class BackendAPIError(NetworkFailureError):
    """Raised when a backend request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from the backend.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class ArtifactAPIClient:
    """Async backend client with retry logic for idempotent requests.

    Attributes:
        base_url: Backend base URL (without the ``/api`` prefix).
        token: Bearer token for the user session, if any.
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> async with ArtifactAPIClient("https://api.example.com", token="jwt") as client:
        ...     artifact = await client.get_artifact("a1")
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Backend base URL.
            token: Bearer token sent with every request.
            max_retries: Maximum number of retry attempts.
            base_delay: Base delay in seconds for exponential backoff.
            max_delay: Maximum delay in seconds between retries.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": "artifact-sync/1.0",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ArtifactAPIClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter.

        Args:
            attempt: The current retry attempt (0-indexed).

        Returns:
            Delay in seconds before the next retry.
        """
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Any] = None,
        retry: bool = True,
    ) -> httpx.Response:
        """Make an HTTP request, retrying transient failures when allowed.

        Args:
            method: HTTP method.
            path: API path (e.g., /api/artifacts/a1).
            json_data: Optional JSON body.
            retry: Whether transient failures may be retried. Must be False
                   for requests that start backend work.

        Returns:
            The successful HTTP response.

        Raises:
            BackendAPIError: If the request fails (after retries, if any).
        """
        attempts = self.max_retries + 1 if retry else 1
        last_exception: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                response = await self.client.request(
                    method=method,
                    url=path,
                    json=json_data,
                )
            except httpx.TimeoutException as e:
                last_exception = e
                if attempt < attempts - 1:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request timeout, retrying",
                        extra={
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                continue
            except httpx.RequestError as e:
                last_exception = e
                if attempt < attempts - 1:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request error, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                continue

            if response.status_code in self.RETRYABLE_STATUS_CODES and attempt < attempts - 1:
                delay = self._retry_after(response) or self._calculate_backoff(attempt)
                logger.warning(
                    "Retryable error from backend",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                error_body = response.text
                logger.error(
                    "Backend API error",
                    extra={
                        "status_code": response.status_code,
                        "path": path,
                        "method": method,
                        "response_body": error_body[:500],
                    },
                )
                raise BackendAPIError(
                    message=f"Backend API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=error_body,
                    request_url=str(response.url),
                )

            return response

        logger.error(
            "Backend request failed",
            extra={
                "path": path,
                "method": method,
                "attempts": attempts,
                "last_error": str(last_exception),
            },
        )
        raise BackendAPIError(
            message=f"Request failed after {attempts} attempt(s): {last_exception}",
            request_url=f"{self.base_url}{path}",
        )

    def _retry_after(self, response: httpx.Response) -> Optional[float]:
        value = response.headers.get("retry-after")
        if value is None:
            return None
        try:
            return min(max(0.0, float(value)), self.max_delay)
        except ValueError:
            return None

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BackendAPIError(
                message=f"Invalid JSON in backend response: {e}",
                status_code=response.status_code,
                response_body=response.text[:500],
                request_url=str(response.url),
            ) from e

    @staticmethod
    def _unwrap(body: Any, key: str) -> Any:
        """Accept both bare payloads and ``{"<key>": payload}`` envelopes."""
        if isinstance(body, dict) and isinstance(body.get(key), (dict, list)):
            return body[key]
        return body

    # ------------------------------------------------------------------
    # Artifact record
    # ------------------------------------------------------------------

    async def get_artifact(self, artifact_id: str) -> Artifact:
        """Fetch the authoritative artifact record.

        Raises:
            BackendAPIError: If the request fails or the body is invalid.
        """
        response = await self._request("GET", f"/api/artifacts/{artifact_id}")
        return self._parse_artifact(response)

    async def update_artifact(self, artifact_id: str, changes: Dict[str, Any]) -> Artifact:
        """Patch artifact fields and return the updated record.

        Args:
            artifact_id: Artifact to update.
            changes: Field values; enums and sets are serialised to JSON.

        Raises:
            BackendAPIError: If the request fails.
        """
        payload = {field: _to_json(value) for field, value in changes.items()}
        response = await self._request(
            "PATCH", f"/api/artifacts/{artifact_id}", json_data=payload
        )
        return self._parse_artifact(response)

    def _parse_artifact(self, response: httpx.Response) -> Artifact:
        body = self._unwrap(self._json(response), "artifact")
        try:
            return Artifact.model_validate(body)
        except ValueError as e:
            raise BackendAPIError(
                message=f"Invalid artifact payload: {e}",
                status_code=response.status_code,
                request_url=str(response.url),
            ) from e

    # ------------------------------------------------------------------
    # Pipeline actions (never retried)
    # ------------------------------------------------------------------

    async def approve_foundations(
        self,
        artifact_id: str,
        skeleton_content: Optional[str] = None,
    ) -> Optional[ArtifactStatus]:
        """Approve the foundations stage, optionally with an edited skeleton.

        Returns:
            The status reported by the backend, or None if it sent none.

        Raises:
            BackendAPIError: If the request fails or the status is unknown.
        """
        payload: Dict[str, Any] = {}
        if skeleton_content is not None:
            payload["skeleton_content"] = skeleton_content
        response = await self._request(
            "POST",
            f"/api/artifacts/{artifact_id}/approve-foundations",
            json_data=payload,
            retry=False,
        )
        body = self._json(response) or {}
        new_status = body.get("newStatus") if isinstance(body, dict) else None
        if new_status is None:
            return None
        try:
            return ArtifactStatus(new_status)
        except ValueError as e:
            raise BackendAPIError(
                message=f"Unknown status in approval response: {new_status!r}",
                status_code=response.status_code,
                request_url=str(response.url),
            ) from e

    async def approve_images(
        self,
        artifact_id: str,
        approved_ids: Iterable[str],
        rejected_ids: Iterable[str] = (),
    ) -> Any:
        """Approve and/or reject image descriptions."""
        response = await self._request(
            "POST",
            f"/api/artifacts/{artifact_id}/images/approve",
            json_data={
                "approvedIds": list(approved_ids),
                "rejectedIds": list(rejected_ids),
            },
            retry=False,
        )
        return self._json(response)

    async def generate_images(self, artifact_id: str) -> Any:
        """Start final image generation for approved descriptions."""
        response = await self._request(
            "POST",
            f"/api/artifacts/{artifact_id}/images/generate",
            retry=False,
        )
        return self._json(response)

    async def regenerate_image(
        self,
        artifact_id: str,
        image_id: str,
        description: str,
    ) -> Any:
        """Regenerate one final image with a new description."""
        response = await self._request(
            "POST",
            f"/api/artifacts/{artifact_id}/images/{image_id}/regenerate",
            json_data={"description": description},
            retry=False,
        )
        return self._json(response)

    # ------------------------------------------------------------------
    # Research
    # ------------------------------------------------------------------

    async def list_research(self, artifact_id: str) -> List[ResearchEntry]:
        response = await self._request("GET", f"/api/artifacts/{artifact_id}/research")
        body = self._unwrap(self._json(response), "research") or []
        return [ResearchEntry.model_validate(item) for item in body]

    async def add_research(
        self,
        artifact_id: str,
        source_type: str,
        source_name: str,
        excerpt: str,
        source_url: Optional[str] = None,
        relevance_score: float = 1.0,
    ) -> ResearchEntry:
        """Add a manual research entry (manual entries get max relevance)."""
        response = await self._request(
            "POST",
            f"/api/artifacts/{artifact_id}/research",
            json_data={
                "source_type": source_type,
                "source_name": source_name,
                "source_url": source_url,
                "excerpt": excerpt,
                "relevance_score": relevance_score,
            },
            retry=False,
        )
        body = self._unwrap(self._json(response), "research")
        return ResearchEntry.model_validate(body)

    async def delete_research(self, artifact_id: str, research_id: str) -> None:
        await self._request(
            "DELETE", f"/api/artifacts/{artifact_id}/research/{research_id}"
        )


def _to_json(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return value
