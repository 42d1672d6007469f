"""Pytest fixtures for API unit tests.

The controller is real: it drives a ProtocolClient against the scripted
localhost device and a TransferEngine backed by the in-memory FTP fake, so
websocket tests exercise the whole request path.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict

import pytest_asyncio
from aiohttp import web

from deck_courier.core.api.controller import APIController
from deck_courier.core.api.server import APIServer
from deck_courier.core.device.client import ProtocolClient


def create_test_app(controller: APIController) -> web.Application:
    """Create a test aiohttp application with all routes and middleware."""
    return APIServer(controller).create_app()


async def receive_type(ws, message_type: str, timeout: float = 2.0) -> Dict[str, Any]:
    """Read websocket messages until one of ``message_type`` arrives."""

    async def _wait() -> Dict[str, Any]:
        while True:
            message = await ws.receive_json()
            if message.get("type") == message_type:
                return message

    return await asyncio.wait_for(_wait(), timeout=timeout)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest_asyncio.fixture
async def controller(settings, events, engine, fake_deck):
    """Controller wired to the fake device; nothing is connected yet."""
    settings.device_port = fake_deck.port
    engine.host = None
    client = ProtocolClient(events, settings)
    controller = APIController(client, engine, events, settings)
    yield controller
    await controller.shutdown()


@pytest_asyncio.fixture
async def test_app(controller) -> web.Application:
    return create_test_app(controller)
