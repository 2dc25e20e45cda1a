"""Generic REST provider.

Maps the capability interface onto a JSON API:

    create  POST   {endpoint}/{type}          -> {"id": ..., ...outputs}
    read    GET    {endpoint}/{type}/{id}     -> attributes (404 = gone)
    update  PUT    {endpoint}/{type}/{id}     -> {"id": ..., ...outputs}
    delete  DELETE {endpoint}/{type}/{id}     (404 = already gone)

Connection errors, timeouts, 429 and gateway errors are transient; any
other error status is fatal.
"""

import logging
from typing import Optional

import requests

from engine.errors import FatalProviderError, TransientProviderError
from providers.base import ProviderResponse

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}


class HttpProvider:
    """Provider capability backed by a REST endpoint."""

    def __init__(
        self,
        name: str,
        endpoint: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        verify: bool = True,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the provider.

        Args:
            name: Provider name (for log messages)
            endpoint: Base URL of the API
            token: Bearer token (resolved from the secret store)
            timeout: Per-request timeout in seconds
            verify: Verify TLS certificates
            session: Optional preconfigured session
        """
        self.name = name
        self.endpoint = endpoint.rstrip('/')
        self.timeout = timeout
        self.verify = verify
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        if token:
            self.session.headers.update({'Authorization': f'Bearer {token}'})

    def _url(self, type_: str, provider_id: Optional[str] = None) -> str:
        if provider_id is None:
            return f'{self.endpoint}/{type_}'
        return f'{self.endpoint}/{type_}/{provider_id}'

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Send a request, translating failures into provider errors."""
        logger.debug(f"[{self.name}] {method} {url}")
        try:
            resp = self.session.request(
                method, url, timeout=self.timeout, verify=self.verify, **kwargs
            )
        except requests.exceptions.Timeout:
            raise TransientProviderError(f"Timeout calling {method} {url}")
        except requests.exceptions.ConnectionError as e:
            raise TransientProviderError(f"Cannot connect to {url}: {e}")
        except requests.exceptions.RequestException as e:
            raise FatalProviderError(f"Request {method} {url} failed: {e}")
        return resp

    def _raise_for_status(self, resp: requests.Response, action: str) -> None:
        if resp.status_code < 400:
            return
        message = f"{action} failed: HTTP {resp.status_code} - {resp.text[:200]}"
        if resp.status_code in TRANSIENT_STATUS:
            raise TransientProviderError(message)
        raise FatalProviderError(message)

    def _acknowledge(self, resp: requests.Response, action: str,
                     provider_id: Optional[str] = None) -> ProviderResponse:
        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            raise FatalProviderError(f"{action} returned invalid JSON: {resp.text[:200]}")
        if not isinstance(body, dict):
            raise FatalProviderError(f"{action} returned unexpected payload: {body!r}")

        outputs = dict(body)
        returned_id = outputs.pop('id', None) or provider_id
        if not returned_id:
            raise FatalProviderError(f"{action} response has no 'id'")
        return ProviderResponse(provider_id=str(returned_id), outputs=outputs)

    def create(self, type_: str, attributes: dict) -> ProviderResponse:
        resp = self._request('POST', self._url(type_), json=attributes)
        self._raise_for_status(resp, f"create {type_}")
        return self._acknowledge(resp, f"create {type_}")

    def read(self, type_: str, provider_id: str) -> Optional[dict]:
        resp = self._request('GET', self._url(type_, provider_id))
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, f"read {type_} {provider_id}")
        try:
            body = resp.json()
        except ValueError:
            raise FatalProviderError(f"read {type_} {provider_id} returned invalid JSON")
        if not isinstance(body, dict):
            raise FatalProviderError(f"read {type_} {provider_id} returned unexpected payload: {body!r}")
        body.pop('id', None)
        return body

    def update(self, type_: str, provider_id: str, attributes: dict) -> ProviderResponse:
        resp = self._request('PUT', self._url(type_, provider_id), json=attributes)
        self._raise_for_status(resp, f"update {type_} {provider_id}")
        return self._acknowledge(resp, f"update {type_} {provider_id}", provider_id=provider_id)

    def delete(self, type_: str, provider_id: str) -> None:
        resp = self._request('DELETE', self._url(type_, provider_id))
        if resp.status_code == 404:
            logger.debug(f"[{self.name}] {type_} {provider_id} already absent")
            return
        self._raise_for_status(resp, f"delete {type_} {provider_id}")

    def ping(self) -> tuple[bool, str]:
        """Check the endpoint answers at all.

        Returns:
            (success, message) tuple
        """
        try:
            resp = self.session.get(self.endpoint, timeout=min(self.timeout, 10), verify=self.verify)
        except requests.exceptions.ConnectionError as e:
            return False, f"Cannot connect to {self.endpoint}: {e}"
        except requests.exceptions.Timeout:
            return False, f"Timeout connecting to {self.endpoint}"
        if resp.status_code in (401, 403):
            return False, f"{self.endpoint} rejected credentials (HTTP {resp.status_code})"
        return True, f"{self.endpoint} reachable (HTTP {resp.status_code})"
