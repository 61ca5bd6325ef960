"""HTTP client for the hilprobe server REST API.

Provides an async client for listing targets and running binaries remotely.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote

import httpx

from hilprobe_core.errors import (
    AuthError,
    AuthFailure,
    HilprobeError,
    InternalError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass
class TargetInfo:
    """A target as listed by the server."""

    name: str
    chip: str
    busy: bool
    queued: int
    up: bool | None = None


@dataclass
class RunResult:
    """Outcome of one run request.

    Attributes:
        job_id: Server-side job identifier.
        status: Terminal job state ("completed", "timed_out" or "error").
        passed: Verdict.
        duration: Seconds the job held the probe.
        run_mode: "ram", "flash", or None if the image was rejected early.
        message: Human-readable summary.
        output: Device output received before the result.
    """

    job_id: str
    status: str
    passed: bool
    duration: float
    run_mode: str | None
    message: str
    output: str = ""


class HilprobeClient:
    """Async HTTP client for the hilprobe REST API.

    Example:
        >>> async with HilprobeClient("http://probes.lab:8000", token) as client:
        ...     for target in await client.list_targets():
        ...         print(target.name, target.chip)
        ...     result = await client.run(elf_bytes, target="nucleo")
        ...     print("PASS" if result.passed else "FAIL")
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL of the server (e.g., "http://probes.lab:8000").
            token: Bearer credential (static token or OIDC token).
            timeout: Connect and request timeout in seconds. Reading a run
                stream is not limited; the server enforces the job deadline.
            client: Optional httpx client (for testing).
        """
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "HilprobeClient":
        """Async context manager entry."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not initialized."""
        if self._client is None:
            raise RuntimeError(
                "Client not initialized. Use 'async with HilprobeClient(...) as client:'"
            )
        return self._client

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    # -------------------------------------------------------------------------
    # Targets
    # -------------------------------------------------------------------------

    async def health(self) -> dict[str, Any]:
        """Get the server health status.

        Raises:
            httpx.HTTPError: If the request fails.
        """
        response = await self._get_client().get("/health")
        response.raise_for_status()
        result: dict[str, Any] = response.json()
        return result

    async def list_targets(self) -> list[TargetInfo]:
        """List the targets the server offers.

        Raises:
            AuthError: If the credential is rejected.
            httpx.HTTPError: If the request fails.
        """
        response = await self._get_client().get("/targets", headers=self._headers)
        _check_response(response)
        return [
            TargetInfo(
                name=item["name"],
                chip=item["chip"],
                busy=item["busy"],
                queued=item["queued"],
                up=item.get("up"),
            )
            for item in response.json()
        ]

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def run(
        self,
        image: bytes,
        target: str | None = None,
        timeout: float | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> RunResult:
        """Run a binary and wait for its result.

        Args:
            image: ELF image bytes.
            target: Target name; if None the server uses the name embedded in
                the binary.
            timeout: Execution timeout override in seconds.
            on_output: Called with each chunk of device output as it arrives.

        Returns:
            The terminal result, with the captured output.

        Raises:
            AuthError: If the credential is rejected.
            NotFoundError: If the target is unknown.
            HilprobeError: If the server refuses the request.
            InternalError: If the stream ends without a result.
            httpx.HTTPError: If the request fails.
        """
        path = f"/targets/{quote(target, safe='')}/run" if target else "/run"
        params = {"timeout": timeout} if timeout is not None else None
        output: list[str] = []

        async with self._get_client().stream(
            "POST",
            path,
            content=image,
            params=params,
            headers=self._headers,
            timeout=httpx.Timeout(self._timeout, read=None),
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                _check_response(response)

            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                event = _decode_event(line)
                if event.get("type") == "output":
                    output.append(event["data"])
                    if on_output is not None:
                        on_output(event["data"])
                elif event.get("type") == "result":
                    return RunResult(
                        job_id=event["job_id"],
                        status=event["status"],
                        passed=event["passed"],
                        duration=event["duration"],
                        run_mode=event.get("run_mode"),
                        message=event.get("message", ""),
                        output="".join(output),
                    )

        raise InternalError("Server closed the stream without a result")


def _decode_event(line: str) -> dict[str, Any]:
    try:
        event = json.loads(line)
    except json.JSONDecodeError as exc:
        raise InternalError(f"Malformed event from server: {line[:80]!r}") from exc
    if not isinstance(event, dict):
        raise InternalError(f"Malformed event from server: {line[:80]!r}")
    return event


def _check_response(response: httpx.Response) -> None:
    """Translate error statuses into hilprobe errors."""
    if response.status_code < 400:
        return
    try:
        detail = response.json().get("detail", response.text)
    except (ValueError, AttributeError):
        detail = response.text
    if response.status_code == 401:
        raise AuthError(AuthFailure.NO_MATCH, "Server rejected the credential")
    if response.status_code == 404:
        raise NotFoundError(str(detail))
    if response.status_code < 500:
        raise HilprobeError(f"Request refused ({response.status_code}): {detail}")
    response.raise_for_status()
