from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

from reservation_scraper.models import AvailabilityQuery


class AvailabilitySearchRequest(BaseModel):
    city: Optional[str] = "tokyo"
    dates: List[str] = Field(default_factory=list)  # ISO dates, first 14 used
    party_size: Optional[int] = 2
    meal: Optional[str] = None  # "lunch" or "dinner"
    area: Optional[str] = None
    platform: Optional[str] = "tabelog"
    refresh: Optional[bool] = False

    def to_query(self) -> AvailabilityQuery:
        return AvailabilityQuery(
            city=self.city,
            dates=self.dates,
            party_size=self.party_size if self.party_size is not None else 2,
            meal=self.meal,
            area=self.area,
            platform=self.platform or "tabelog",
            refresh=bool(self.refresh),
        )


class AvailabilityCheckRequest(BaseModel):
    url: str  # Tabelog restaurant URL (English or Japanese)
    refresh: Optional[bool] = False
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    meals: Optional[List[str]] = None
    party_size: Optional[int] = None


class ResolveRequest(BaseModel):
    name: str
    city: Optional[str] = "tokyo"
    area: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    links: Optional[Dict[str, Optional[str]]] = None  # Already known platform links


class ResolveNamesRequest(BaseModel):
    names: List[str]
    city: Optional[str] = "tokyo"


class ScoreLookupRequest(BaseModel):
    names: List[str]
    city: Optional[str] = "tokyo"


class ResolveResponse(BaseModel):
    name: str
    city: str
    links: Dict[str, Optional[str]]
    score: Optional[float] = None
    tabelog_url: Optional[str] = None
    stage: Optional[str] = None


class AccountValidationResponse(BaseModel):
    platform: str
    valid: bool
    error: Optional[str] = None
    last_login_at: Optional[str] = None


class BrowseResponse(BaseModel):
    city: str
    page: int
    has_next_page: bool
    restaurants: List[Dict[str, Any]]
