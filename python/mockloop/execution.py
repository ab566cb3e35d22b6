"""Piston code-execution client."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


DEFAULT_PISTON_URL = "https://emkc.org/api/v2/piston"
DEFAULT_MIN_INTERVAL_SECONDS = 0.25

# Languages offered to candidates, by Piston runtime name.
AVAILABLE_LANGUAGES = ["javascript", "typescript", "c++", "python", "c", "java", "go", "ruby"]

_TEST_FAILURE = re.compile(r"Test Case #?\d+\s*Failed", re.IGNORECASE)


class ExecutionResult(BaseModel):
    """Outcome of one code run. Non-empty ``stderr`` means the run failed."""

    language: str
    version: str
    stdout: str = ""
    stderr: str = ""
    ok: bool = Field(default=True, description="False when the runner itself could not be reached")

    @property
    def passed(self) -> bool:
        return not self.stderr.strip()


class Runtime(BaseModel):
    language: str
    version: str
    aliases: list[str] = Field(default_factory=list)


def condense_stderr(stderr: str) -> str:
    """Reduce a thrown test-case failure to its 'Test Case #N Failed' line."""
    if not stderr:
        return stderr
    match = _TEST_FAILURE.search(stderr)
    return match.group(0) if match else stderr


def _version_key(version: str) -> tuple[int, ...]:
    parts = []
    for piece in version.split("."):
        try:
            parts.append(int(piece))
        except ValueError:
            parts.append(0)
    return tuple(parts)


class PistonClient:
    """
    Runs candidate code on a Piston server.

    Calls are serialized and spaced at least ``min_interval`` seconds apart to
    stay under the public endpoint's rate limit. Transport and HTTP failures
    never raise; they come back as a failed result with the error in
    ``stderr`` so the agent can relay it.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_PISTON_URL,
        min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.min_interval = min_interval
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._lock = asyncio.Lock()
        self._last_call = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    async def _pace(self) -> None:
        wait = self._last_call + self.min_interval - time.monotonic()
        if wait > 0:
            await asyncio.sleep(wait)
        self._last_call = time.monotonic()

    async def execute(self, language: str, version: str, source: str) -> ExecutionResult:
        payload: dict[str, Any] = {
            "language": language,
            "version": version,
            "files": [{"content": source}],
        }
        async with self._lock:
            await self._pace()
            try:
                async with self._client() as client:
                    response = await client.post(f"{self.base_url}/execute", json=payload)
            except httpx.RequestError as exc:
                logger.warning("Piston request failed: %s", exc)
                return ExecutionResult(language=language, version=version, stderr=str(exc), ok=False)

        if response.status_code >= 400:
            detail = f"HTTP {response.status_code}: {response.text[:160]}"
            logger.warning("Piston rejected %s %s: %s", language, version, detail)
            return ExecutionResult(language=language, version=version, stderr=detail, ok=False)

        try:
            run = response.json().get("run") or {}
        except (ValueError, AttributeError) as exc:
            detail = f"Unreadable runner response: {response.text[:160]}"
            logger.warning("Piston returned a non-JSON body for %s %s: %s", language, version, exc)
            return ExecutionResult(language=language, version=version, stderr=detail, ok=False)
        result = ExecutionResult(
            language=language,
            version=version,
            stdout=run.get("stdout") or "",
            stderr=condense_stderr(run.get("stderr") or ""),
        )
        logger.info("Executed %s %s (passed=%s)", language, version, result.passed)
        return result

    async def list_runtimes(self) -> list[Runtime]:
        """
        Runtimes installed on the server.

        Raises:
            httpx.HTTPError: Transport failure or error status.
            ValueError: The body is not a runtime list.
        """
        async with self._client() as client:
            response = await client.get(f"{self.base_url}/runtimes")
        response.raise_for_status()
        return [Runtime.model_validate(item) for item in response.json()]

    async def resolve_language(self, name: str) -> Runtime:
        """
        Latest runtime for ``name`` (language or alias).

        Raises:
            LookupError: If no runtime matches, or the language is not offered.
            httpx.HTTPError, ValueError: As for ``list_runtimes``.
        """
        wanted = name.strip().lower()
        matches = [
            runtime
            for runtime in await self.list_runtimes()
            if runtime.language == wanted or wanted in runtime.aliases
        ]
        if not matches:
            raise LookupError(f"{name}: Name not found, please try again with an alias.")
        runtime = max(matches, key=lambda r: _version_key(r.version))
        if runtime.language not in AVAILABLE_LANGUAGES:
            raise LookupError(
                f"{name}: Not an available language. Use get_languages to see available languages."
            )
        return runtime
