from __future__ import annotations

import asyncio
from dataclasses import dataclass
from urllib.parse import urljoin

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from hie_sync.core.config import (
    MEDIATOR_BASE_URL,
    MEDIATOR_CLIENT_ID,
    MEDIATOR_MAX_PAGES,
    MEDIATOR_PASSWORD,
    MEDIATOR_USERNAME,
    REQUEST_TIMEOUT_SECS,
)
from hie_sync.core.errors import PermanentMediatorError, TransientMediatorError

FHIR_JSON = "application/fhir+json"


@dataclass
class MediatorResponse:
    status: int
    body: object


def _parse_body(resp: requests.Response):
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


class MediatorClient:
    """FHIR calls routed through the HIE mediator.

    Blocking ``requests`` calls run in a worker thread so callers can await
    them. Writes are attempted once per call; retry policy for writes lives
    in the transmission layer. Reads are retried here on transient failures.
    """

    def __init__(
        self,
        base_url: str = MEDIATOR_BASE_URL,
        username: str | None = MEDIATOR_USERNAME,
        password: str | None = MEDIATOR_PASSWORD,
        client_id: str | None = MEDIATOR_CLIENT_ID,
        timeout: float = REQUEST_TIMEOUT_SECS,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if username and password:
            self.session.auth = (username, password)
        self.session.headers.update({"Content-Type": FHIR_JSON, "Accept": FHIR_JSON})
        if client_id:
            self.session.headers["X-OpenHIM-ClientID"] = client_id

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(self, method: str, url: str, json=None, params: dict | None = None) -> MediatorResponse:
        try:
            resp = self.session.request(method, url, json=json, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransientMediatorError(f"{method} {url} failed: {exc}") from exc

        body = _parse_body(resp)
        if resp.status_code >= 500:
            raise TransientMediatorError(
                f"{method} {url} returned HTTP {resp.status_code}", status=resp.status_code, body=body
            )
        if resp.status_code >= 400:
            raise PermanentMediatorError(
                f"{method} {url} returned HTTP {resp.status_code}", status=resp.status_code, body=body
            )
        return MediatorResponse(status=resp.status_code, body=body)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(TransientMediatorError),
        reraise=True,
    )
    def _get_url(self, url: str, params: dict | None = None) -> MediatorResponse:
        return self._send("GET", url, params=params)

    async def get(self, path: str, params: dict | None = None) -> MediatorResponse:
        return await asyncio.to_thread(self._get_url, self.url(path), params)

    async def post(self, path: str, resource: dict) -> MediatorResponse:
        return await asyncio.to_thread(self._send, "POST", self.url(path), resource)

    async def put(self, path: str, resource: dict) -> MediatorResponse:
        return await asyncio.to_thread(self._send, "PUT", self.url(path), resource)

    def _search_all(self, url: str, params: dict, max_pages: int) -> list[dict]:
        """
        FHIR search returns a Bundle. Follow link[next].
        max_pages bounds how long a single lookup can take.
        """
        items: list[dict] = []
        bundle = self._get_url(url, params=params).body

        pages = 0
        while isinstance(bundle, dict):
            pages += 1
            for entry in bundle.get("entry", []) or []:
                res = entry.get("resource")
                if res:
                    items.append(res)

            if pages >= max_pages:
                break

            next_url = None
            for link in bundle.get("link", []) or []:
                if link.get("relation") == "next":
                    next_url = link.get("url")
                    break
            if not next_url:
                break
            bundle = self._get_url(urljoin(url, next_url)).body

        return items

    async def search(
        self,
        channel: str,
        resource_type: str,
        params: dict,
        max_pages: int = MEDIATOR_MAX_PAGES,
    ) -> list[dict]:
        url = self.url(f"{channel.rstrip('/')}/{resource_type}")
        return await asyncio.to_thread(self._search_all, url, params, max_pages)

    async def search_by_identifier(self, channel: str, system: str, value: str) -> list[dict]:
        return await self.search(channel, "Patient", {"identifier": f"{system}|{value}"})
