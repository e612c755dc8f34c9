"""
Shared HTTP plumbing for building-block clients.
"""

from typing import Any, Optional

import requests
import structlog

from .exceptions import IntegrationError, IntegrationNotConfiguredError

log = structlog.get_logger()


class BuildingBlockClient:
    """
    Thin wrapper around a requests session bound to one base URL.

    Non-2xx responses and transport errors are raised as IntegrationError.
    """

    service_name = 'building-block'

    def __init__(self, base_url: str, *, timeout: int = 30, session: Optional[requests.Session] = None):
        self.base_url = (base_url or '').rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        if not self.configured:
            raise IntegrationNotConfiguredError(
                f"{self.service_name} base URL is not configured",
                service=self.service_name,
            )

        url = f"{self.base_url}/{path.lstrip('/')}"
        kwargs.setdefault('timeout', self.timeout)

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            log.warning(
                'integration.request_failed',
                service=self.service_name, method=method, url=url, error=str(e),
            )
            raise IntegrationError(
                f"{self.service_name} request failed: {e}",
                service=self.service_name,
            ) from e

        if not response.ok:
            log.warning(
                'integration.bad_status',
                service=self.service_name, method=method, url=url,
                status_code=response.status_code,
            )
            raise IntegrationError(
                f"{self.service_name} responded with {response.status_code}",
                service=self.service_name,
                status_code=response.status_code,
            )

        return response

    def _json(self, method: str, path: str, **kwargs) -> Any:
        response = self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise IntegrationError(
                f"{self.service_name} returned invalid JSON",
                service=self.service_name,
            ) from e
