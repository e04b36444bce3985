"""HTTP implementations of the collaborator interfaces.

Each collaborator is a remote service exposing one JSON endpoint per
capability (``POST <base_url>/analyze`` and so on). Transport failures and
HTTP error statuses are translated into the autopilot error taxonomy so the
resilient client can decide what to retry.
"""

from typing import Any

import httpx
import pydantic
import structlog

from autopilot.config.settings import EndpointConfig
from autopilot.exceptions import (
    AnalysisError,
    AuthenticationError,
    BackendError,
    CallTimeoutError,
    NetworkError,
    PublicationError,
    RateLimitExceededError,
    ValidationError,
)
from autopilot.models.collaborators import (
    ChangeSet,
    IssueAnalysis,
    IssueReport,
    Publication,
    Resolution,
    ReviewResult,
)
from autopilot.providers.base import Analyzer, Publisher, Resolver, Reviewer

log = structlog.get_logger(__name__)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class HttpCollaborator:
    """Base class for collaborators reached over HTTP.

    Args:
        endpoint: Base URL, token and transport timeout
        name: Collaborator name used in logs
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        endpoint: EndpointConfig,
        name: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.name = name
        self.base_url = str(endpoint.base_url).rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _build_client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.endpoint.api_token is not None:
            headers["Authorization"] = f"Bearer {self.endpoint.api_token.get_secret_value()}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(self.endpoint.timeout),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self._transport,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._build_client()
            log.info("collaborator_connected", collaborator=self.name, base_url=self.base_url)
        return self._client

    async def connect(self) -> None:
        self._get_client()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpCollaborator":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def _post(self, capability: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON payload to a capability endpoint.

        Raises:
            CallTimeoutError: If the transport timed out
            NetworkError: If the service could not be reached
            AuthenticationError: On HTTP 401/403
            RateLimitExceededError: On HTTP 429
            ValidationError: On any other 4xx
            BackendError: On 5xx, or when the body is not a JSON object
        """
        client = self._get_client()

        try:
            response = await client.post(f"/{capability}", json=payload)
        except httpx.TimeoutException as e:
            raise CallTimeoutError(
                f"{self.name} {capability} request timed out", timeout_seconds=self.endpoint.timeout
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{self.name} {capability} request failed: {e}") from e

        status = response.status_code
        log.debug("collaborator_response", collaborator=self.name, capability=capability, status=status)

        if status in (401, 403):
            raise AuthenticationError(f"{self.name} rejected credentials (HTTP {status})")
        if status == 429:
            raise RateLimitExceededError(
                f"{self.name} is rate limiting requests", retry_after=_retry_after(response), limit="remote"
            )
        if 400 <= status < 500:
            raise ValidationError(f"{self.name} rejected {capability} request (HTTP {status}): {response.text}")
        if status >= 500:
            raise BackendError(f"{self.name} {capability} failed", status_code=status, response_text=response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise BackendError(
                f"{self.name} returned invalid JSON", status_code=status, response_text=response.text
            ) from e
        if not isinstance(data, dict):
            raise BackendError(f"{self.name} returned {type(data).__name__}, expected object", status_code=status)
        return data


class HttpAnalyzer(HttpCollaborator, Analyzer):
    """Analyzer backed by ``POST /analyze``."""

    def __init__(self, endpoint: EndpointConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(endpoint, name="analyzer", transport=transport)

    async def analyze(self, issue: IssueReport) -> IssueAnalysis:
        data = await self._post("analyze", {"issue": issue.model_dump()})
        try:
            return IssueAnalysis.model_validate(data)
        except pydantic.ValidationError as e:
            raise AnalysisError(f"Malformed analysis response: {e}") from e


class HttpResolver(HttpCollaborator, Resolver):
    """Resolver backed by ``POST /resolve``."""

    def __init__(self, endpoint: EndpointConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(endpoint, name="resolver", transport=transport)

    async def resolve(self, issue: IssueReport, analysis: IssueAnalysis) -> Resolution:
        data = await self._post(
            "resolve",
            {"issue": issue.model_dump(), "analysis": analysis.model_dump(mode="json")},
        )
        try:
            return Resolution.model_validate(data)
        except pydantic.ValidationError as e:
            raise BackendError(f"Malformed resolution response: {e}") from e


class HttpReviewer(HttpCollaborator, Reviewer):
    """Reviewer backed by ``POST /review``."""

    def __init__(self, endpoint: EndpointConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(endpoint, name="reviewer", transport=transport)

    async def review(self, change_set: ChangeSet, issue: IssueReport) -> ReviewResult:
        data = await self._post(
            "review",
            {"change_set": change_set.model_dump(), "issue": issue.model_dump()},
        )
        try:
            return ReviewResult.model_validate(data)
        except pydantic.ValidationError as e:
            raise BackendError(f"Malformed review response: {e}") from e


class HttpPublisher(HttpCollaborator, Publisher):
    """Publisher backed by ``POST /publish``."""

    def __init__(self, endpoint: EndpointConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(endpoint, name="publisher", transport=transport)

    async def publish(self, change_set: ChangeSet, issue: IssueReport) -> Publication:
        try:
            data = await self._post(
                "publish",
                {"change_set": change_set.model_dump(), "issue": issue.model_dump()},
            )
        except BackendError as e:
            raise PublicationError(e.message, status_code=e.status_code, response_text=e.response_text) from e
        try:
            return Publication.model_validate(data)
        except pydantic.ValidationError as e:
            raise PublicationError(f"Malformed publication response: {e}") from e
