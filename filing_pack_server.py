import random
import uuid
from datetime import datetime
from typing import Optional

from aiohttp import web
from loguru import logger

PLAN_UPGRADE_BODY = {
    "code": "PLAN_UPGRADE_REQUIRED",
    "message": "Filing pack generation requires Basic plan or higher",
    "featureKey": "yearEndFilingPack",
}


class FilingPackServer:
    """In-memory stand-in for the filing pack API.

    Packs move from queued to generating after `queue_time` seconds and to
    ready (or failed, with `fail_packs`) after `completion_time` seconds.
    """

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.1,
        queue_time: float = 0.5,
        fail_packs: bool = False,
        plan_allows_generation: bool = True,
        storage_url: str = "https://storage.example.com",
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.queue_time = queue_time
        self.fail_packs = fail_packs
        self.plan_allows_generation = plan_allows_generation
        self.storage_url = storage_url.rstrip("/")
        self.packs: dict[str, dict] = {}
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application()
        self.app.router.add_get(
            "/businesses/{business_id}/filing-pack/status", self.handle_status
        )
        self.app.router.add_get(
            "/businesses/{business_id}/filing-pack/history", self.handle_history
        )
        self.app.router.add_post(
            "/businesses/{business_id}/filing-pack/generate", self.handle_generate
        )
        self.app.router.add_post(
            "/businesses/{business_id}/filing-pack/{pack_id}/regenerate",
            self.handle_regenerate,
        )
        self.app.router.add_get(
            "/businesses/{business_id}/filing-pack/{pack_id}/download/{kind}",
            self.handle_download,
        )
        self.logger = logger

    @staticmethod
    def _tax_year(request: web.Request) -> int:
        year = request.query.get("taxYear")
        return int(year) if year else datetime.now().year

    def _refresh(self, pack: dict) -> dict:
        if pack["status"] in ("ready", "failed"):
            return pack

        elapsed = (datetime.now() - pack["_requested_at"]).total_seconds()
        if elapsed >= self.completion_time:
            if self.fail_packs:
                pack["status"] = "failed"
                pack["errorMessage"] = "Pack generation failed"
            else:
                pack["status"] = "ready"
                for kind in ("pdf", "csv", "zip"):
                    pack[f"{kind}Url"] = f"{self.storage_url}/{pack['id']}.{kind}"
                pack["metadataJson"] = {"documents": 3}
        elif elapsed >= self.queue_time:
            pack["status"] = "generating"
        return pack

    def _packs_for(self, business_id: str, tax_year: int) -> list[dict]:
        packs = [
            self._refresh(p)
            for p in self.packs.values()
            if p["businessId"] == business_id and p["taxYear"] == tax_year
        ]
        return sorted(packs, key=lambda p: p["version"], reverse=True)

    @staticmethod
    def _public(pack: dict) -> dict:
        return {k: v for k, v in pack.items() if not k.startswith("_")}

    def _create_pack(self, business_id: str, tax_year: int) -> dict:
        existing = self._packs_for(business_id, tax_year)
        now = datetime.now()
        pack = {
            "id": str(uuid.uuid4()),
            "businessId": business_id,
            "taxYear": tax_year,
            "version": existing[0]["version"] + 1 if existing else 1,
            "status": "queued",
            "errorMessage": None,
            "pdfUrl": None,
            "csvUrl": None,
            "zipUrl": None,
            "metadataJson": None,
            "createdAt": now.isoformat(),
            "_requested_at": now,
        }
        self.packs[pack["id"]] = pack
        self.logger.info(f"Queued filing pack {pack['id']} v{pack['version']} for {business_id}/{tax_year}")
        return pack

    def _find_pack(self, request: web.Request) -> Optional[dict]:
        pack = self.packs.get(request.match_info["pack_id"])
        if pack is None or pack["businessId"] != request.match_info["business_id"]:
            return None
        return self._refresh(pack)

    async def handle_status(self, request):
        if random.random() < self.error_rate:
            self.logger.info("Returning error status")
            return web.json_response({"message": "Service unavailable"}, status=503)

        packs = self._packs_for(request.match_info["business_id"], self._tax_year(request))
        if not packs:
            return web.json_response({"pack": None})

        pack = packs[0]
        self.logger.info(f"Returning {pack['status']} status for pack {pack['id']}")
        return web.json_response({"pack": self._public(pack)})

    async def handle_history(self, request):
        packs = self._packs_for(request.match_info["business_id"], self._tax_year(request))
        return web.json_response({"packs": [self._public(p) for p in packs]})

    async def handle_generate(self, request):
        if not self.plan_allows_generation:
            return web.json_response(PLAN_UPGRADE_BODY, status=403)

        body = await request.json() if request.can_read_body else {}
        tax_year = int(body.get("taxYear") or datetime.now().year)
        pack = self._create_pack(request.match_info["business_id"], tax_year)
        return web.json_response({"packId": pack["id"], "status": pack["status"]})

    async def handle_regenerate(self, request):
        existing = self._find_pack(request)
        if existing is None:
            return web.json_response(
                {"message": "Filing pack not found", "code": "NOT_FOUND"}, status=404
            )
        if not self.plan_allows_generation:
            return web.json_response(PLAN_UPGRADE_BODY, status=403)

        pack = self._create_pack(existing["businessId"], existing["taxYear"])
        return web.json_response({"packId": pack["id"], "status": pack["status"]})

    async def handle_download(self, request):
        pack = self._find_pack(request)
        if pack is None:
            return web.json_response({"message": "Filing pack not found"}, status=404)
        if pack["status"] != "ready":
            return web.json_response({"message": "Filing pack is not ready yet"}, status=400)

        kind = request.match_info["kind"]
        url = pack.get(f"{kind}Url")
        if not url:
            return web.json_response(
                {"message": f"{kind.upper()} document not found"}, status=404
            )
        raise web.HTTPFound(url)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            self.logger.info("Server stopped")
