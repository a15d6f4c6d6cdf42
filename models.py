from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CheckStatus(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"


class Availability(str, Enum):
    IN_STOCK = "In Stock"
    NOT_AVAILABLE = "N/A"


class ClassificationResult(BaseModel):
    """What the listing page looked like once loaded."""
    model_config = ConfigDict(frozen=True)

    is_blocked_page: bool
    title_fragment: str
    page_title: str


class CheckOutcome(BaseModel):
    """Result of checking one ASIN in one run.

    - `availability` is None when the check failed (`status` TIMEOUT)
    - `header` is at most four words of the listing title
    """
    model_config = ConfigDict(frozen=True)

    asin: str
    header: str
    availability: Optional[Availability] = None
    is_blocked_page: bool = False
    status: CheckStatus


class IngestionRecord(BaseModel):
    id: int
    run_id: Optional[str]
    asin: str
    header: Optional[str]
    availability: Optional[str]
    is_doggy: Optional[bool]
    check_date: str


class ProgressEvent(BaseModel):
    current: int
    total: int
    asin: str
    status: str
    available: Optional[bool] = None
    title: Optional[str] = None


class RunSummary(BaseModel):
    total: int = 0
    available: int = 0
    unavailable: int = 0
    errors: int = 0
    cancelled: bool = False

    def add(self, outcome: CheckOutcome) -> None:
        if outcome.status is CheckStatus.SUCCESS:
            self.available += 1
        elif outcome.status is CheckStatus.NOT_FOUND:
            self.unavailable += 1
        else:
            self.errors += 1

    @property
    def processed(self) -> int:
        return self.available + self.unavailable + self.errors
