"""Credit service HTTP client for borrower contacts and credit status"""

import httpx
from typing import Any, Dict, Optional
from dunning_scheduler.domain.models import CreditInfo
from dunning_scheduler.domain.exceptions import UpstreamLookupError
from dunning_scheduler.config import settings
from dunning_scheduler.infrastructure.observability.metrics import credit_lookup_failures_counter


class CreditClient:
    """Client for the main service credit API"""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.main_service_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.main_service_api_key
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers={"x-api-key": self.api_key},
            transport=self.transport,
        )

    async def _get_json(self, path: str) -> Dict[str, Any]:
        async with self._client() as client:
            try:
                response = await client.get(f"{self.base_url}{path}")
                response.raise_for_status()
                return response.json()
            except httpx.TimeoutException as e:
                credit_lookup_failures_counter.inc()
                raise UpstreamLookupError(f"Credit service timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                credit_lookup_failures_counter.inc()
                raise UpstreamLookupError(f"Credit service error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                credit_lookup_failures_counter.inc()
                raise UpstreamLookupError(f"Credit service unreachable: {e}") from e
            except ValueError as e:
                credit_lookup_failures_counter.inc()
                raise UpstreamLookupError(f"Invalid JSON from credit service: {e}") from e

    async def get_credit(self, credit_id: str) -> CreditInfo:
        """
        Fetch credit details with borrower contacts.

        Raises:
            UpstreamLookupError: On timeout, HTTP errors, or invalid response
        """
        data = await self._get_json(f"/api/credits/{credit_id}")
        try:
            credit = data["credit"]
            borrower = credit.get("borrower") or {}
            return CreditInfo(
                credit_id=str(credit["id"]),
                status=credit["status"],
                borrower_name=borrower.get("name"),
                company_name=borrower.get("companyName"),
                email=borrower.get("email"),
                phone=borrower.get("phone"),
                device_token=borrower.get("deviceToken"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            credit_lookup_failures_counter.inc()
            raise UpstreamLookupError(f"Invalid credit data for {credit_id}: {e}") from e

    async def get_credit_status(self, credit_id: str) -> str:
        """
        Fetch the current credit status.

        Raises:
            UpstreamLookupError: On timeout, HTTP errors, or invalid response
        """
        data = await self._get_json(f"/api/credits/{credit_id}/status")
        try:
            return str(data["status"])
        except (KeyError, TypeError) as e:
            credit_lookup_failures_counter.inc()
            raise UpstreamLookupError(f"Invalid status data for {credit_id}: {e}") from e
