"""HTTP client that records every exchange for the current test."""

import json
import logging
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from yarl import URL

from conformance_harness.models.result import RequestResponse

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class Reply:
    """Response as seen by a test body."""

    status: int
    url: str
    headers: Mapping[str, str]
    body: str

    def json(self) -> Any:
        return json.loads(self.body)

    @property
    def content_type(self) -> str:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return ""


@dataclass(kw_only=True)
class LoggedClient:
    """Thin wrapper over an aiohttp session.

    Relative URLs are resolved against ``base_url``. Every request is recorded
    as a ``RequestResponse``; the runner forks a fresh client per test and
    attaches its log to that test's result.
    """

    session: aiohttp.ClientSession = field(repr=False)
    base_url: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    requests: list[RequestResponse] = field(default_factory=list)

    @classmethod
    @asynccontextmanager
    async def create(
        cls,
        *,
        base_url: str | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float = 30.0,
    ) -> AsyncGenerator["LoggedClient", None]:
        """Create a client with its own session.

        Args:
            base_url: URL relative request paths are resolved against
            headers: Headers sent with every request
            timeout: Total timeout per request in seconds

        Yields:
            Configured client; the session is closed on exit

        """
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout)
        ) as session:
            yield cls(
                session=session,
                base_url=base_url,
                default_headers=dict(headers or {}),
            )

    def fork(self) -> "LoggedClient":
        """Client sharing this session but keeping its own, empty request log."""
        return LoggedClient(
            session=self.session,
            base_url=self.base_url,
            default_headers=dict(self.default_headers),
        )

    def resolve(self, url: str) -> str:
        if URL(url).is_absolute() or self.base_url is None:
            return url
        return f"{self.base_url.rstrip('/')}/{url.lstrip('/')}"

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        data: Mapping[str, str] | str | None = None,
        json_body: Any = None,
    ) -> Reply:
        target = self.resolve(url)
        request_headers = {**self.default_headers, **(headers or {})}
        log.debug("%s %s", method.upper(), target)

        async with self.session.request(
            method,
            target,
            headers=request_headers,
            params=params,
            data=data,
            json=json_body,
        ) as response:
            body = await response.text()
            reply = Reply(
                status=response.status,
                url=str(response.url),
                headers=dict(response.headers),
                body=body,
            )

        self.requests.append(
            RequestResponse(
                direction="outbound",
                method=method.upper(),
                url=reply.url,
                request_headers=request_headers,
                request_body=_encode_body(data, json_body),
                status=reply.status,
                response_headers=reply.headers,
                response_body=reply.body,
            )
        )
        return reply

    async def get(self, url: str, **kwargs: Any) -> Reply:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Reply:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> Reply:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Reply:
        return await self.request("DELETE", url, **kwargs)


def _encode_body(data: Mapping[str, str] | str | None, json_body: Any) -> str | None:
    if json_body is not None:
        return json.dumps(json_body)
    if isinstance(data, Mapping):
        return str(URL.build(query=data).query_string)
    return data
