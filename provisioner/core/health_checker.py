"""
Health Checker - verifies the web server answers after a restart.

Provides:
- HTTP probe of the local site
- Retry with exponential backoff
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ..core.logger import get_logger


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    healthy: bool
    status_code: Optional[int] = None
    response_time_ms: float = 0
    message: str = ""
    checks_performed: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
            "message": self.message,
            "checks_performed": self.checks_performed,
        }


class HealthChecker:
    """
    HTTP probe with retries.

    Usage:
        checker = HealthChecker()
        result = await checker.check("http://127.0.0.1/", max_retries=3)
        if result.healthy:
            print("Site is serving")
    """

    def __init__(
        self,
        timeout: float = 10.0,
        expected_status_codes: List[int] = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.timeout = timeout
        self.expected_status_codes = expected_status_codes or [200]
        self.transport = transport
        self.logger = get_logger("HealthChecker")

    async def check(
        self,
        url: str,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        max_delay: float = 10.0,
    ) -> HealthCheckResult:
        """
        Perform health check with retries.

        Args:
            url: URL to check
            max_retries: Maximum number of attempts
            retry_delay: Initial delay between retries (seconds)
            max_delay: Maximum delay between retries

        Returns:
            HealthCheckResult
        """
        result = HealthCheckResult(healthy=False)

        for attempt in range(1, max_retries + 1):
            self.logger.info("health_check_attempt", attempt=attempt, url=url)

            try:
                check_result = await self._do_check(url)
                check_result.checks_performed = attempt

                if check_result.healthy:
                    return check_result

                result = check_result

            except httpx.HTTPError as e:
                result.last_error = str(e)
                result.checks_performed = attempt
                self.logger.warning("health_check_error", error=str(e))

            # Wait before retry (exponential backoff)
            if attempt < max_retries:
                delay = min(retry_delay * (2 ** (attempt - 1)), max_delay)
                await asyncio.sleep(delay)

        result.message = f"Health check failed after {max_retries} attempts"
        return result

    async def _do_check(self, url: str) -> HealthCheckResult:
        """Perform a single health check."""
        result = HealthCheckResult(healthy=False)
        start_time = datetime.now()

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(url)

        result.status_code = response.status_code
        result.response_time_ms = (datetime.now() - start_time).total_seconds() * 1000

        if response.status_code not in self.expected_status_codes:
            result.message = f"Unexpected status code: {response.status_code}"
            return result

        result.healthy = True
        result.message = "OK"
        return result


class InstanceMetadata:
    """Reads the instance's public address from the cloud metadata service."""

    def __init__(
        self,
        base_url: str = "http://169.254.169.254/latest",
        timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("InstanceMetadata")

    async def public_ipv4(self) -> Optional[str]:
        """IMDSv2 with session token, falling back to IMDSv1. None if unavailable."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                headers = {}
                token_response = await client.put(
                    f"{self.base_url}/api/token",
                    headers={"X-aws-ec2-metadata-token-ttl-seconds": "60"},
                )
                if token_response.status_code == 200:
                    headers["X-aws-ec2-metadata-token"] = token_response.text

                response = await client.get(
                    f"{self.base_url}/meta-data/public-ipv4",
                    headers=headers,
                )
        except httpx.HTTPError as e:
            self.logger.debug("metadata_unavailable", error=str(e))
            return None

        if response.status_code != 200:
            return None
        return response.text.strip() or None
