from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class PackStatus(str, Enum):
    queued = "queued"
    generating = "generating"
    ready = "ready"
    failed = "failed"


TERMINAL_STATUSES = (PackStatus.ready, PackStatus.failed)


class DocumentKind(str, Enum):
    pdf = "pdf"
    csv = "csv"
    zip = "zip"


class PollPhase(str, Enum):
    fast = "fast"
    slow = "slow"


class Subject(BaseModel):
    """A business and the tax year whose filing pack is being watched"""

    model_config = ConfigDict(frozen=True)

    business_id: str
    tax_year: int

    def __str__(self) -> str:
        return f"{self.business_id}/{self.tax_year}"


class FilingPack(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    business_id: str = Field(alias="businessId")
    tax_year: int = Field(alias="taxYear")
    version: int = 1
    status: PackStatus
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    pdf_url: Optional[str] = Field(default=None, alias="pdfUrl")
    csv_url: Optional[str] = Field(default=None, alias="csvUrl")
    zip_url: Optional[str] = Field(default=None, alias="zipUrl")
    metadata: Optional[dict] = Field(default=None, alias="metadataJson")
    created_at: Optional[str] = Field(default=None, alias="createdAt")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def payload(self) -> Optional[dict[str, Any]]:
        """Download links and metadata, only once the pack is ready"""
        if self.status != PackStatus.ready:
            return None
        return {
            "pdf_url": self.pdf_url,
            "csv_url": self.csv_url,
            "zip_url": self.zip_url,
            "metadata": self.metadata,
        }


class GenerateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pack_id: str = Field(alias="packId")
    status: PackStatus


class PollingConfig(BaseModel):
    fast_interval: float = Field(default=2.0, gt=0)
    slow_interval: float = Field(default=5.0, gt=0)
    fast_poll_limit: int = Field(default=30, ge=1)  # 60 seconds at 2s intervals
    ceiling: float = Field(default=300.0, gt=0)  # 5 minutes


class ClientConfig(BaseModel):
    request_timeout: float = Field(default=20.0, gt=0)
    api_token: Optional[str] = None
