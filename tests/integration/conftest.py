"""
Integration test fixtures: a Controller wired to the fake Twitch transport,
installed into the FastAPI app, and an HTTP client driving the app in-process.
"""
import httpx
import pytest

import tuneshift.main as main_module
from tuneshift.core.controller import Controller
from tuneshift.memory.store import MemoryStore
from tuneshift.twitch.grant import CallbackGrantFlow


@pytest.fixture
async def app_controller(test_settings, http_client, connector):
    """Controller with the HTTP-hosted grant flow, installed as the app's controller."""
    controller = Controller(
        MemoryStore(),
        config=test_settings,
        grant_flow=CallbackGrantFlow(),
        http_client=http_client,
        ws_connect=connector,
    )
    await controller.start()
    main_module.controller = controller
    yield controller
    main_module.controller = None
    await controller.shutdown()


@pytest.fixture
async def client(app_controller):
    # ASGITransport skips lifespan events, so startup never builds its own controller
    transport = httpx.ASGITransport(app=main_module.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
