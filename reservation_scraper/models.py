"""
Data model shared by scrapers, the identity resolver and the streaming aggregator.
"""
import re
from datetime import date, timedelta
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, computed_field

from .normalize import normalize_name


class AvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    LIMITED = "limited"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class MealAvailability(BaseModel):
    lunch: bool = False
    dinner: bool = False


LUNCH_CUTOFF_HOUR = 15
_SLOT_RE = re.compile(r'^\s*(\d{1,2}):(\d{2})')


def classify_meals(time_slots: List[str]) -> MealAvailability:
    """Slots starting before 15:00 count as lunch, the rest as dinner"""
    meals = MealAvailability()
    for slot in time_slots or []:
        match = _SLOT_RE.match(slot or "")
        if not match:
            continue
        hour = int(match.group(1))
        if hour > 23:
            continue
        if hour < LUNCH_CUTOFF_HOUR:
            meals.lunch = True
        else:
            meals.dinner = True
    return meals


class AvailabilityEntry(BaseModel):
    date: str  # ISO date
    status: AvailabilityStatus = AvailabilityStatus.UNKNOWN
    time_slots: List[str] = Field(default_factory=list)  # HH:MM, may be empty when available
    meal_types: List[str] = Field(default_factory=list)  # lunch/dinner known without slot times

    @property
    def is_bookable(self) -> Optional[bool]:
        """True/False for a definite signal, None when nothing could be extracted"""
        if self.status == AvailabilityStatus.UNKNOWN:
            return None
        return self.status in (AvailabilityStatus.AVAILABLE, AvailabilityStatus.LIMITED)

    @computed_field
    @property
    def meals(self) -> MealAvailability:
        meals = classify_meals(self.time_slots)
        meals.lunch = meals.lunch or 'lunch' in self.meal_types
        meals.dinner = meals.dinner or 'dinner' in self.meal_types
        return meals


class RestaurantCandidate(BaseModel):
    """A restaurant discovered on one platform, tagged by that platform"""

    name: str
    platform: str
    url: Optional[str] = None
    platform_links: Dict[str, Optional[str]] = Field(default_factory=dict)
    score: Optional[float] = None
    cuisine: Optional[str] = None
    area: Optional[str] = None
    city: Optional[str] = None
    price_range: Optional[str] = None
    image_url: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    availability: List[AvailabilityEntry] = Field(default_factory=list)
    extras: Dict[str, Any] = Field(default_factory=dict)  # platform-specific fields

    @computed_field
    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)

    @property
    def key(self) -> str:
        """Identity within a single platform's result set"""
        return self.url or self.normalized_name

    def available_dates(self) -> List[str]:
        return sorted(
            entry.date for entry in self.availability
            if entry.status in (AvailabilityStatus.AVAILABLE, AvailabilityStatus.LIMITED)
        )

    def slots_for(self, day: str) -> List[str]:
        for entry in self.availability:
            if entry.date == day:
                return entry.time_slots
        return []

    def add_availability(self, entry: AvailabilityEntry):
        """Record availability for a date, merging time slots for a date seen before"""
        for existing in self.availability:
            if existing.date == entry.date:
                for slot in entry.time_slots:
                    if slot not in existing.time_slots:
                        existing.time_slots.append(slot)
                existing.time_slots.sort()
                for meal in entry.meal_types:
                    if meal not in existing.meal_types:
                        existing.meal_types.append(meal)
                if existing.status == AvailabilityStatus.UNKNOWN:
                    existing.status = entry.status
                return
        self.availability.append(entry)
        self.availability.sort(key=lambda e: e.date)

    def missing_links(self, platforms: List[str]) -> List[str]:
        return [p for p in platforms if p != self.platform and not self.platform_links.get(p)]


class DateRange(BaseModel):
    date_from: str
    date_to: str

    def dates(self, limit: int = 14) -> List[str]:
        start = date.fromisoformat(self.date_from)
        end = date.fromisoformat(self.date_to)
        days = []
        current = start
        while current <= end and len(days) < limit:
            days.append(current.isoformat())
            current += timedelta(days=1)
        return days


class LocationParams(BaseModel):
    city: str = "tokyo"
    party_size: int = 2
    meal: Optional[str] = None  # "lunch", "dinner" or None
    area: Optional[str] = None


class SearchPage(BaseModel):
    """One parsed results page"""
    restaurants: List[RestaurantCandidate] = Field(default_factory=list)
    page: int = 1
    has_next_page: bool = False


class SearchResult(BaseModel):
    platform: str
    restaurants: List[RestaurantCandidate] = Field(default_factory=list)
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    pages_fetched: int = 0


class ReservationCheck(BaseModel):
    """Result of checking one Tabelog restaurant's reservation calendar"""
    tabelog_url: str
    has_online_reservation: bool = False
    reservation_url: Optional[str] = None
    dates: List[AvailabilityEntry] = Field(default_factory=list)
    checked_at: str
    error: Optional[str] = None


class ResolvedIdentity(BaseModel):
    """Cross-platform links and score found for one reference restaurant"""
    name: str
    city: str
    links: Dict[str, Optional[str]] = Field(default_factory=dict)
    score: Optional[float] = None
    tabelog_url: Optional[str] = None
    stage: Optional[str] = None  # which stage produced the answer


class AvailabilityQuery(BaseModel):
    """One streaming availability search"""
    city: Optional[str] = "tokyo"
    dates: List[str] = Field(default_factory=list)  # ISO dates, at most the first 14 are searched
    party_size: int = 2
    meal: Optional[str] = None
    area: Optional[str] = None
    platform: str = "tabelog"
    refresh: bool = False

    def location(self) -> LocationParams:
        return LocationParams(city=(self.city or "tokyo").lower(), party_size=self.party_size,
                              meal=self.meal, area=self.area)
