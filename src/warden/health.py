"""HTTP health probes against the public endpoint fronting each user's worker."""

import logging

import httpx

from warden.config import MonitorConfig, parse_duration
from warden.errors import HealthCheckTimeout
from warden.types import HealthCheckResult

logger = logging.getLogger(__name__)


class HealthChecker:
    """Single bounded-timeout probes; holds the per-user public base URLs."""

    def __init__(self, config: MonitorConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._endpoints: dict[str, str] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    def register(self, user_id: str, base_url: str) -> None:
        self._endpoints[user_id] = base_url.rstrip("/")

    def unregister(self, user_id: str) -> None:
        self._endpoints.pop(user_id, None)

    def endpoint(self, user_id: str) -> str | None:
        return self._endpoints.get(user_id)

    async def check_health(self, user_id: str) -> HealthCheckResult:
        """GET the health endpoint; healthy only on a 2xx answer."""
        base_url = self._endpoints.get(user_id)
        if not base_url:
            return HealthCheckResult(
                healthy=False,
                message=f"No public health endpoint configured for user {user_id}",
            )

        url = f"{base_url}{self.config.health_path}"
        timeout = parse_duration(self.config.health_timeout)
        logger.debug(f"Checking worker health at {url}")

        try:
            response = await self.client.get(
                url,
                headers={"Accept": "application/json"},
                timeout=httpx.Timeout(timeout),
            )
        except httpx.TimeoutException:
            error = HealthCheckTimeout(f"Health check at {url} timed out after {timeout:g}s")
            return HealthCheckResult(healthy=False, message=str(error), error=error)
        except httpx.HTTPError as e:
            return HealthCheckResult(healthy=False, message=f"Worker unreachable: {e}")

        if response.is_success:
            return HealthCheckResult(
                healthy=True,
                message="Worker is running properly",
                status_code=response.status_code,
            )

        return HealthCheckResult(
            healthy=False,
            message=f"Health check failed with status: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
            logs=await self._fetch_logs(base_url),
        )

    async def _fetch_logs(self, base_url: str) -> str | None:
        """Best-effort log excerpt for diagnostics; never affects the verdict."""
        url = f"{base_url}{self.config.logs_path}"
        try:
            response = await self.client.get(
                url,
                params={"lines": self.config.log_lines},
                timeout=httpx.Timeout(parse_duration(self.config.logs_timeout)),
            )
        except httpx.HTTPError as e:
            logger.warning(f"Error fetching worker logs from {url}: {e}")
            return None
        if not response.is_success:
            return None
        return response.text or None

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
