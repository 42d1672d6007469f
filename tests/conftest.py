"""Shared pytest configuration and fixtures for the Deck Courier test suite."""

import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from deck_courier.core.events import EventChannel
from deck_courier.core.settings import DeckSettings
from deck_courier.core.transfer.engine import TransferEngine
from tests.infrastructure.mocks.device_mocks import FakeHyperDeck
from tests.infrastructure.mocks.ftp_mocks import FakeFTPServer


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def settings() -> DeckSettings:
    """Settings with intervals short enough for tests."""
    return DeckSettings(
        clip_list_timeout=0.5,
        poll_interval=0.01,
        watch_interval=None,
        ftp_timeout=2.0,
    )


@pytest.fixture
def events() -> EventChannel:
    return EventChannel()


@pytest.fixture
def destination(tmp_path: Path) -> Path:
    path = tmp_path / "dest"
    path.mkdir()
    return path


@pytest.fixture
def ftp_server() -> FakeFTPServer:
    """Recorder file service with three existing clips on ssd1."""
    server = FakeFTPServer()
    for name in ("A_0001.mp4", "A_0002.mp4", "A_0003.mp4"):
        server.add("ssd1", name)
    server.add("ssd2", "B_0001.mp4")
    return server


@pytest_asyncio.fixture
async def ftp_listener(settings: DeckSettings):
    """A TCP port that accepts connections, standing in for the FTP control port."""

    async def _accept(reader, writer):
        writer.close()

    server = await asyncio.start_server(_accept, "127.0.0.1", 0)
    settings.ftp_port = server.sockets[0].getsockname()[1]
    yield server
    server.close()
    await server.wait_closed()


@pytest_asyncio.fixture
async def engine(settings, events, ftp_server, ftp_listener) -> TransferEngine:
    return TransferEngine(
        host="127.0.0.1",
        events=events,
        settings=settings,
        ftp_factory=ftp_server.factory,
    )


@pytest_asyncio.fixture
async def fake_deck():
    deck = FakeHyperDeck()
    await deck.start()
    yield deck
    await deck.stop()

