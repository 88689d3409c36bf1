import asyncio
from typing import Any, Optional, TypeVar

import aiohttp
from loguru import logger
from pydantic import BaseModel, ValidationError
from filing_pack_client.errors import RequestError
from filing_pack_client.models import (
    ClientConfig,
    DocumentKind,
    FilingPack,
    GenerateResponse,
    Subject,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _invalid_response(status: int) -> RequestError:
    return RequestError(status, "Invalid response from the API.", "INVALID_RESPONSE")


class FilingPackClient:
    def __init__(self, base_url: str, config: Optional[ClientConfig] = None):
        self.base_url = base_url.rstrip("/")
        self.config = config or ClientConfig()
        self.logger = logger
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "FilingPackClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {}
            if self.config.api_token:
                headers["Authorization"] = f"Bearer {self.config.api_token}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
            )
        return self._session

    def _pack_url(self, subject: Subject, suffix: str) -> str:
        return f"{self.base_url}/businesses/{subject.business_id}/filing-pack/{suffix}"

    async def _request(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        """Sends a request to the filing pack API and returns the decoded JSON body"""
        session = self._get_session()

        try:
            async with session.request(method, url, **kwargs) as response:
                if response.status >= 400:
                    raise await self._error_from_response(response)

                text = await response.text()
                if not text:
                    return {}
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise _invalid_response(response.status) from e
                if not isinstance(data, dict):
                    raise _invalid_response(response.status)
                return data
        except RequestError as e:
            self.logger.error(f"HTTP error {e.status} at {url}: {e.message}")
            raise
        except asyncio.TimeoutError as e:
            self.logger.error(f"Request to {url} timed out")
            raise RequestError(0, "Request timed out. Please try again.", "TIMEOUT") from e
        except aiohttp.ClientError as e:
            self.logger.error(f"Network error at {url}: {e}")
            raise RequestError(
                0, "Network error. Can't reach the API. Please try again.", "NETWORK_ERROR"
            ) from e

    @staticmethod
    async def _error_from_response(response: aiohttp.ClientResponse) -> RequestError:
        message = f"Request failed ({response.status})"
        try:
            data = await response.json(content_type=None)
        except ValueError:
            return RequestError(response.status, response.reason or message)

        if not isinstance(data, dict):
            return RequestError(response.status, message)
        return RequestError(
            response.status,
            data.get("message") or message,
            data.get("code"),
            data,
        )

    def _validate(self, model: type[ModelT], data: Any, url: str) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            self.logger.error(f"Unexpected {model.__name__} payload at {url}: {e}")
            raise _invalid_response(200) from e

    async def get_status(self, subject: Subject) -> Optional[FilingPack]:
        """Fetches the latest filing pack for a tax year, or None if none was ever requested"""
        url = self._pack_url(subject, "status")
        data = await self._request("GET", url, params={"taxYear": subject.tax_year})
        pack = data.get("pack")
        return self._validate(FilingPack, pack, url) if pack else None

    async def get_history(self, subject: Subject) -> list[FilingPack]:
        url = self._pack_url(subject, "history")
        data = await self._request("GET", url, params={"taxYear": subject.tax_year})
        packs = data.get("packs") or []
        if not isinstance(packs, list):
            raise _invalid_response(200)
        return [self._validate(FilingPack, p, url) for p in packs]

    async def generate(self, subject: Subject) -> GenerateResponse:
        url = self._pack_url(subject, "generate")
        data = await self._request("POST", url, json={"taxYear": subject.tax_year})
        self.logger.debug(f"Generation of {subject} accepted as pack {data.get('packId')}")
        return self._validate(GenerateResponse, data, url)

    async def regenerate(self, subject: Subject, pack_id: str) -> GenerateResponse:
        """Requests a new version of an existing pack"""
        url = self._pack_url(subject, f"{pack_id}/regenerate")
        data = await self._request("POST", url)
        self.logger.debug(f"Regeneration of {subject} accepted as pack {data.get('packId')}")
        return self._validate(GenerateResponse, data, url)

    def download_url(self, subject: Subject, pack_id: str, kind: DocumentKind) -> str:
        return self._pack_url(subject, f"{pack_id}/download/{DocumentKind(kind).value}")
