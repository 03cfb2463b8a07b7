from __future__ import annotations

from typing import Iterable

import httpx
import pytest
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse


class MockSignalingServer:
    """In-process WHIP/WHEP endpoint driven through ``httpx.ASGITransport``."""

    base_url = "http://testserver"

    def __init__(
        self,
        statuses: Iterable[int] = (),
        *,
        location: str | None = "/r/1",
        answer: str = "valid-answer",
        ice_payload: object | None = None,
        delete_status: int = 200,
    ) -> None:
        self.statuses = list(statuses)
        self.location = location
        self.answer = answer
        self.ice_payload = ice_payload
        self.delete_status = delete_status
        self.offers: list[tuple[str | None, str]] = []
        self.deleted: list[str] = []
        self.app = self._create_app()

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self.app), base_url=self.base_url
        )

    def _create_app(self) -> FastAPI:
        app = FastAPI()

        @app.post("/whip/{name}")
        async def offer(name: str, request: Request) -> Response:
            body = (await request.body()).decode("utf-8")
            self.offers.append((request.headers.get("content-type"), body))
            status = self.statuses.pop(0) if self.statuses else 201
            if status >= 300:
                text = "not found" if status == 404 else "busy"
                return PlainTextResponse(text, status_code=status)
            headers = {"Location": self.location} if self.location else {}
            return Response(
                content=self.answer,
                status_code=status,
                media_type="application/sdp",
                headers=headers,
            )

        @app.options("/whip/{name}")
        async def options(name: str) -> Response:
            return Response(status_code=204, headers={"Allow": "OPTIONS, POST"})

        @app.delete("/r/{resource_id}")
        async def delete(resource_id: str) -> Response:
            self.deleted.append(resource_id)
            return Response(status_code=self.delete_status)

        @app.get("/api/ice-servers")
        async def ice_servers() -> Response:
            if self.ice_payload is None:
                return PlainTextResponse("missing", status_code=404)
            return JSONResponse(self.ice_payload)

        return app


@pytest.fixture
def signaling_server() -> type[MockSignalingServer]:
    return MockSignalingServer
