"""
Connectivity probe.

Issues one request to a target and classifies what happened:

- Reached                 -- a response body came back
- RefusedMatchingPattern  -- the request failed with an accepted failure message
- RefusedNonMatching      -- the request failed with some other message
- TransportError          -- the request could not be issued at all

Every connectivity state is expected to flap while the mesh converges, so
the probe never reports a FatalFailure.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Callable, Union

import httpx
import structlog

from convergence import SUCCESS, Probe, ProbeResult, RetryableFailure

logger = structlog.get_logger(__name__)

# Body returned by the static-server fixture (hashicorp/http-echo).
DEFAULT_MARKER = "hello world"

# curl output seen when the mesh blocks a connection. The reset comes from a
# missing healthy upstream; the empty reply from an intention denial.
CURL_FAILURE_MESSAGES: tuple[str, ...] = (
    "curl: (56) Recv failure: Connection reset by peer",
    "curl: (52) Empty reply from server",
)

HTTPX_FAILURE_MESSAGES: tuple[str, ...] = (
    "Connection reset by peer",
    "Server disconnected without sending a response",
)


class RequestFailed(Exception):
    """The request was issued and failed; ``output`` is what the client printed."""

    def __init__(self, output: str) -> None:
        super().__init__(output)
        self.output = output


Fetcher = Callable[[str], str]


@dataclass(frozen=True)
class Reached:
    body: str


@dataclass(frozen=True)
class RefusedMatchingPattern:
    pattern: str


@dataclass(frozen=True)
class RefusedNonMatching:
    actual_output: str


@dataclass(frozen=True)
class TransportError:
    error: Exception


ConnectivityOutcome = Union[Reached, RefusedMatchingPattern, RefusedNonMatching, TransportError]


class HttpFetcher:
    """Fetch a URL directly with an httpx client."""

    def __init__(self, client: httpx.Client | None = None, timeout: float = 5.0) -> None:
        self._client = client or httpx.Client(timeout=timeout)

    def __call__(self, url: str) -> str:
        try:
            response = self._client.get(url)
        except httpx.TransportError as exc:
            raise RequestFailed(str(exc)) from exc
        if response.is_error:
            raise RequestFailed(f"HTTP {response.status_code}: {response.text}")
        return response.text

    def close(self) -> None:
        self._client.close()


def match_pattern(output: str, acceptable_patterns: Iterable[str]) -> str | None:
    """Return the first accepted pattern found in ``output``, if any."""
    for pattern in acceptable_patterns:
        if pattern and pattern in output:
            return pattern
    return None


def classify(
    target: str,
    fetch: Fetcher,
    acceptable_patterns: Iterable[str] = CURL_FAILURE_MESSAGES,
) -> ConnectivityOutcome:
    """Issue a single request to ``target`` and classify the result."""
    try:
        body = fetch(target)
    except RequestFailed as exc:
        pattern = match_pattern(exc.output, acceptable_patterns)
        if pattern is not None:
            return RefusedMatchingPattern(pattern)
        return RefusedNonMatching(exc.output)
    except Exception as exc:
        return TransportError(exc)
    return Reached(body)


def check(
    target: str,
    expect_success: bool,
    acceptable_patterns: Iterable[str] = CURL_FAILURE_MESSAGES,
    *,
    fetch: Fetcher,
    marker: str = DEFAULT_MARKER,
) -> ProbeResult:
    """Probe ``target`` once and map the outcome onto a ProbeResult."""
    patterns = tuple(acceptable_patterns)
    outcome = classify(target, fetch, patterns)
    logger.debug(
        "connectivity_probe",
        target=target,
        expect_success=expect_success,
        outcome=type(outcome).__name__,
    )

    if expect_success:
        if isinstance(outcome, Reached):
            if outcome.body and marker in outcome.body:
                return SUCCESS
            return RetryableFailure(f"response from {target} did not contain {marker!r}: {outcome.body!r}")
        return RetryableFailure(f"expected {target} to be reachable: {_describe(outcome)}")

    if isinstance(outcome, RefusedMatchingPattern):
        return SUCCESS
    if isinstance(outcome, Reached):
        return RetryableFailure(f"connection to {target} succeeded but was expected to fail")
    if isinstance(outcome, RefusedNonMatching):
        return RetryableFailure(
            f"connection to {target} failed with unexpected output "
            f"(wanted one of {list(patterns)}): {outcome.actual_output}"
        )
    return RetryableFailure(f"could not probe {target}: {outcome.error}")


def connection_probe(
    target: str,
    expect_success: bool,
    acceptable_patterns: Iterable[str] = CURL_FAILURE_MESSAGES,
    *,
    fetch: Fetcher,
    marker: str = DEFAULT_MARKER,
) -> Probe:
    """Zero-argument closure over check() for the convergence checker."""
    patterns = tuple(acceptable_patterns)

    def probe() -> ProbeResult:
        return check(target, expect_success, patterns, fetch=fetch, marker=marker)

    return probe


def _describe(outcome: ConnectivityOutcome) -> str:
    if isinstance(outcome, RefusedMatchingPattern):
        return f"refused ({outcome.pattern})"
    if isinstance(outcome, RefusedNonMatching):
        return f"refused: {outcome.actual_output}"
    if isinstance(outcome, TransportError):
        return f"transport error: {outcome.error}"
    return f"reached: {outcome.body!r}"
