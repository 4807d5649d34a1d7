"""HTTP endpoint receiving the callbacks that resume suspended sequences."""

import json
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

from aiohttp import web

from conformance_harness.callback_keys import (
    CallbackKeys,
    CallbackLinks,
    InvalidCallbackKeyError,
)
from conformance_harness.http import LoggedClient
from conformance_harness.models.definition import TestSet
from conformance_harness.models.result import RequestResponse, SequenceResult
from conformance_harness.orchestrator import SequenceOrchestrator
from conformance_harness.progress import ProgressBus, ProgressObserver
from conformance_harness.registry import Registry
from conformance_harness.repository.base import Repository, ResultNotFoundError
from conformance_harness.runner import NoPendingWaitError

log = logging.getLogger(__name__)

CLIENT_KEY = web.AppKey("client", LoggedClient)


@dataclass(frozen=True, kw_only=True)
class CallbackHandler:
    """Correlates a callback with its waiting sequence result and resumes it."""

    registry: Registry
    repository: Repository
    links: CallbackLinks
    observer: ProgressObserver | None = None
    test_sets: Sequence[TestSet] = ()

    @property
    def keys(self) -> CallbackKeys:
        return self.links.keys

    async def handle(
        self,
        key: str,
        endpoint: str,
        params: dict[str, str],
        *,
        client: LoggedClient | None = None,
        inbound: RequestResponse | None = None,
    ) -> Sequence[SequenceResult]:
        """Resume the sequence result identified by ``key``.

        Raises:
            InvalidCallbackKeyError: If the key does not verify
            ResultNotFoundError: If the result no longer exists
            NoPendingWaitError: If the result is not waiting at ``endpoint``

        """
        instance_id, result_id = self.keys.verify(key)
        result = await self.repository.get(result_id)
        if result.instance_id != instance_id:
            raise InvalidCallbackKeyError("Callback key does not match the result")
        if result.wait_at != endpoint:
            raise NoPendingWaitError(
                f"Sequence result {result_id} is not waiting at '{endpoint}'"
            )

        log.info("Callback to %s for %s (%s)", endpoint, result.name, result_id)
        orchestrator = SequenceOrchestrator(
            registry=self.registry,
            repository=self.repository,
            client=client,
            observer=self.observer,
            links=self.links,
            test_sets=self.test_sets,
        )
        return await orchestrator.resume(result_id, params, inbound=inbound)


def create_app(
    handler: CallbackHandler,
    *,
    request_timeout: float = 30.0,
    bus: ProgressBus | None = None,
) -> web.Application:
    """Build the callback application.

    Routes:
        GET /oauth2/{key}/{endpoint}: key carried in the path
        GET /oauth2/{endpoint}: key carried in the ``state`` query parameter
        GET /progress/{instance_id}: server-sent progress events, with ``bus``

    """

    async def client_context(app: web.Application) -> AsyncIterator[None]:
        async with LoggedClient.create(timeout=request_timeout) as client:
            app[CLIENT_KEY] = client
            yield

    async def callback(request: web.Request) -> web.Response:
        endpoint = request.match_info["endpoint"]
        key = request.match_info.get("key") or request.query.get("state")
        if not key:
            raise web.HTTPNotFound(text="Missing callback key")

        inbound = RequestResponse(
            direction="inbound",
            method=request.method,
            url=str(request.url),
            request_headers=dict(request.headers),
        )
        try:
            results = await handler.handle(
                key,
                endpoint,
                dict(request.query),
                client=request.app.get(CLIENT_KEY),
                inbound=inbound,
            )
        except (InvalidCallbackKeyError, ResultNotFoundError) as e:
            log.warning("Rejected callback to %s: %s", endpoint, e)
            raise web.HTTPNotFound(text=str(e)) from e
        except NoPendingWaitError as e:
            log.warning("Unexpected callback to %s: %s", endpoint, e)
            return web.json_response(
                {"error": f"no_{endpoint}", "message": str(e)}, status=409
            )

        return web.json_response(
            {"results": [result.summary() for result in results]}
        )

    app = web.Application()
    app.cleanup_ctx.append(client_context)
    app.router.add_get("/oauth2/{key}/{endpoint}", callback)
    app.router.add_get("/oauth2/{endpoint}", callback)

    if bus is not None:
        progress_bus = bus

        async def progress(request: web.Request) -> web.StreamResponse:
            response = web.StreamResponse(
                headers={
                    "Content-Type": "text/event-stream",
                    "Cache-Control": "no-cache",
                }
            )
            await response.prepare(request)
            events = progress_bus.subscribe(request.match_info["instance_id"])
            try:
                async for event in events:
                    payload = json.dumps(event.as_dict())
                    await response.write(f"data: {payload}\n\n".encode())
            finally:
                await events.aclose()
            return response

        app.router.add_get("/progress/{instance_id}", progress)
    return app
