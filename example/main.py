import asyncio

from filing_pack_server import FilingPackServer
from filing_pack_client.errors import RequestError
from filing_pack_client.filing_pack_client import FilingPackClient
from filing_pack_client.models import PollingConfig, Subject
from filing_pack_client.poller import FilingPackPoller


async def status_changed(pack):
    print(f"Filing pack {pack.id} v{pack.version} is now: {pack.status.value}")


async def main():
    PORT = 8000
    server = FilingPackServer(completion_time=20.0, error_rate=0.1)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = PollingConfig(fast_interval=1.0, slow_interval=3.0, fast_poll_limit=10, ceiling=60.0)
    subject = Subject(business_id="biz-1", tax_year=2025)

    async with FilingPackClient(f"http://localhost:{PORT}") as client:
        async with FilingPackPoller(client, config, on_status_change=status_changed) as poller:
            try:
                await poller.request_generation(subject)
                await poller.wait_until_idle()
                if poller.job is not None and poller.job.payload:
                    print(f"Download PDF: {poller.job.payload['pdf_url']}")
                else:
                    print("Stopped watching before the pack finished")
            except RequestError as e:
                print(f"Error occurred: {poller.error or e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
