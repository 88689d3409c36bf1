import asyncio
from typing import AsyncGenerator

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from filing_pack_server import FilingPackServer
from filing_pack_client.errors import PLAN_UPGRADE_REQUIRED, RequestError
from filing_pack_client.filing_pack_client import FilingPackClient
from filing_pack_client.models import ClientConfig, DocumentKind, PackStatus, Subject
from filing_pack_client.poller import FilingPackPoller

BASE_URL_TEMPLATE = "http://localhost:{}"
SUBJECT = Subject(business_id="biz-1", tax_year=2025)


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[tuple, None]:
    """Start and yield a test FilingPackServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = FilingPackServer(completion_time=0.5, queue_time=0.1, error_rate=0.0)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest_asyncio.fixture
async def client(server) -> AsyncGenerator[FilingPackClient, None]:
    _, port = server
    async with FilingPackClient(BASE_URL_TEMPLATE.format(port)) as client_instance:
        yield client_instance


@pytest.mark.asyncio
async def test_status_without_pack(client):
    """A tax year with no generation request has no pack."""
    assert await client.get_status(SUBJECT) is None


@pytest.mark.asyncio
async def test_generate_then_ready(client):
    """A generated pack is queued and becomes ready with download links."""
    response = await client.generate(SUBJECT)
    assert response.status == PackStatus.queued

    pack = await client.get_status(SUBJECT)
    assert pack.id == response.pack_id
    assert pack.business_id == "biz-1"
    assert pack.tax_year == 2025
    assert pack.payload is None

    await asyncio.sleep(0.6)
    pack = await client.get_status(SUBJECT)
    assert pack.status == PackStatus.ready
    assert pack.payload["pdf_url"].endswith(f"{pack.id}.pdf")


@pytest.mark.asyncio
async def test_failed_pack_carries_error_message(server, client):
    server_instance, _ = server
    server_instance.fail_packs = True
    server_instance.completion_time = 0.0

    await client.generate(SUBJECT)
    pack = await client.get_status(SUBJECT)

    assert pack.status == PackStatus.failed
    assert pack.error_message == "Pack generation failed"
    assert pack.is_terminal


@pytest.mark.asyncio
async def test_plan_upgrade_error_code(server, client):
    server_instance, _ = server
    server_instance.plan_allows_generation = False

    with pytest.raises(RequestError) as exc_info:
        await client.generate(SUBJECT)

    assert exc_info.value.status == 403
    assert exc_info.value.code == PLAN_UPGRADE_REQUIRED
    assert exc_info.value.requires_plan_upgrade


@pytest.mark.asyncio
async def test_regenerate_creates_new_version(client):
    first = await client.generate(SUBJECT)
    second = await client.regenerate(SUBJECT, first.pack_id)

    history = await client.get_history(SUBJECT)

    assert [p.id for p in history] == [second.pack_id, first.pack_id]
    assert [p.version for p in history] == [2, 1]


@pytest.mark.asyncio
async def test_regenerate_unknown_pack(client):
    with pytest.raises(RequestError) as exc_info:
        await client.regenerate(SUBJECT, "missing")

    assert exc_info.value.status == 404
    assert exc_info.value.message == "Filing pack not found"


@pytest.mark.asyncio
async def test_download_redirects_once_ready(server, client):
    server_instance, _ = server
    server_instance.completion_time = 0.0
    response = await client.generate(SUBJECT)
    url = client.download_url(SUBJECT, response.pack_id, DocumentKind.csv)

    assert url.endswith(f"/businesses/biz-1/filing-pack/{response.pack_id}/download/csv")
    async with aiohttp.ClientSession() as session:
        async with session.get(url, allow_redirects=False) as download:
            assert download.status == 302
            assert download.headers["Location"].endswith(f"{response.pack_id}.csv")


@pytest.mark.asyncio
async def test_transient_server_error(server, client):
    server_instance, _ = server
    server_instance.error_rate = 1.0

    with pytest.raises(RequestError) as exc_info:
        await client.get_status(SUBJECT)

    assert exc_info.value.status == 503
    assert exc_info.value.message == "Service unavailable"


@pytest.mark.asyncio
async def test_server_unavailable():
    """Test behavior when server is not available."""
    client = FilingPackClient(
        base_url="http://localhost:9999", config=ClientConfig(request_timeout=2.0)  # Invalid port
    )

    try:
        with pytest.raises(RequestError) as exc_info:
            await client.get_status(SUBJECT)
    finally:
        await client.close()

    assert exc_info.value.status == 0
    assert exc_info.value.code == "NETWORK_ERROR"


@pytest_asyncio.fixture
async def malformed_server(unused_tcp_port_factory) -> AsyncGenerator[int, None]:
    """Serve 200 responses whose bodies do not match the filing pack API."""

    async def status(request):
        return web.Response(text="<html>Bad gateway</html>", content_type="text/html")

    async def history(request):
        return web.json_response({"packs": [{"id": "pack-1", "status": "shredded"}]})

    async def generate(request):
        return web.json_response({"packId": "pack-1", "status": "queued"})

    async def regenerate(request):
        return web.json_response({"accepted": True})

    app = web.Application()
    app.router.add_get("/businesses/{business_id}/filing-pack/status", status)
    app.router.add_get("/businesses/{business_id}/filing-pack/history", history)
    app.router.add_post("/businesses/{business_id}/filing-pack/generate", generate)
    app.router.add_post("/businesses/{business_id}/filing-pack/{pack_id}/regenerate", regenerate)

    port = unused_tcp_port_factory()
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, "localhost", port).start()
    try:
        yield port
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_non_json_body_is_request_error(malformed_server):
    async with FilingPackClient(BASE_URL_TEMPLATE.format(malformed_server)) as client:
        with pytest.raises(RequestError) as exc_info:
            await client.get_status(SUBJECT)

    assert exc_info.value.status == 200
    assert exc_info.value.code == "INVALID_RESPONSE"


@pytest.mark.asyncio
async def test_invalid_pack_is_request_error(malformed_server):
    async with FilingPackClient(BASE_URL_TEMPLATE.format(malformed_server)) as client:
        with pytest.raises(RequestError) as exc_info:
            await client.get_history(SUBJECT)
        with pytest.raises(RequestError) as regenerate_info:
            await client.regenerate(SUBJECT, "pack-1")

    assert exc_info.value.code == "INVALID_RESPONSE"
    assert regenerate_info.value.code == "INVALID_RESPONSE"


@pytest.mark.asyncio
async def test_poller_reports_malformed_responses(malformed_server):
    """Malformed bodies surface as the poller's error and stop the new session."""
    async with FilingPackClient(BASE_URL_TEMPLATE.format(malformed_server)) as client:
        async with FilingPackPoller(client) as poller:
            with pytest.raises(RequestError):
                await poller.load_status(SUBJECT)
            assert poller.error == "Invalid response from the API."

            with pytest.raises(RequestError):
                await poller.request_generation(SUBJECT)
            assert poller.error == "Invalid response from the API."
            assert not poller.is_generating
