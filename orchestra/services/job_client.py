"""Client for the remote browser-automation job backend."""

from __future__ import annotations

import math
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from orchestra.models.jobs import JobStatus, JobSubmission


class SubmissionError(RuntimeError):
    """Raised when a job could not be created."""


class TransientPollError(RuntimeError):
    """Raised when a status poll fails without a definitive job outcome."""


class RemoteJobError(RuntimeError):
    """Raised when the backend reports that a job failed."""


class JobClient(Protocol):
    """Contract the orchestrator consumes to run lanes remotely."""

    async def submit(self, task_description: str) -> JobSubmission: ...

    async def poll_status(self, job_handle: str) -> JobStatus: ...


def raise_for_job_error(status: JobStatus) -> None:
    """Raise RemoteJobError when a polled status is a definitive failure.

    Args:
        status: Polled job status.
    """

    if status.status == "error":
        raise RemoteJobError(status.error_message or "Unknown error")


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = {}
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("error")
        if detail:
            return str(detail)
    return f"HTTP {response.status_code}"


def _progress_hint(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        hint = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(hint):
        return None
    return int(min(max(hint, 0), 100))


def _parse_status(data: dict[str, Any]) -> JobStatus:
    session_log = data.get("session_log") or []
    return JobStatus(
        status=data.get("status"),
        live_view_ref=data.get("streaming_url") or None,
        output=data.get("output"),
        error_message=data.get("error_message"),
        events_observed=len(session_log) if isinstance(session_log, list) else 0,
        progress_hint=_progress_hint(data.get("progress")),
    )


class HttpJobClient:
    """Job client backed by the playground HTTP API."""

    def __init__(
        self,
        base_url: str,
        auth_token: str,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @classmethod
    def from_settings(cls, settings: Any) -> HttpJobClient:
        """Build a client from application settings."""

        return cls(
            base_url=settings.job_backend_url,
            auth_token=settings.job_auth_token,
            timeout_seconds=settings.job_request_timeout_seconds,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._auth_token}",
            "X-Auth-Token": self._auth_token,
        }

    async def submit(self, task_description: str) -> JobSubmission:
        """Create a remote job.

        Args:
            task_description: Natural-language task for the browser session.

        Returns:
            JobSubmission with the job handle and optional live view.
        """

        try:
            response = await self._client.post(
                f"{self._base_url}/api/playground/runs",
                headers=self._headers(),
                json={"user_message": task_description},
            )
        except httpx.HTTPError as exc:
            raise SubmissionError(f"Failed to start session: {exc}") from exc

        if response.is_error:
            raise SubmissionError(_error_detail(response))

        try:
            data = response.json()
            return JobSubmission(
                job_handle=data["session_id"],
                live_view_ref=data.get("streaming_url") or None,
            )
        except (ValueError, KeyError, TypeError, ValidationError) as exc:
            raise SubmissionError(f"Malformed submission response: {exc}") from exc

    async def poll_status(self, job_handle: str) -> JobStatus:
        """Fetch the current status of a remote job.

        Args:
            job_handle: Handle returned by ``submit``.

        Returns:
            JobStatus snapshot.
        """

        try:
            response = await self._client.get(
                f"{self._base_url}/api/sessions/{job_handle}",
                headers=self._headers(),
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise TransientPollError(f"Failed to get session status: {exc}") from exc
        except ValueError as exc:
            raise TransientPollError(f"Malformed session status: {exc}") from exc

        if not isinstance(data, dict):
            raise TransientPollError("Malformed session status: expected an object")
        try:
            return _parse_status(data)
        except ValidationError as exc:
            raise TransientPollError(f"Malformed session status: {exc}") from exc

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""

        if self._owns_client:
            await self._client.aclose()
