"""Data models for raw API listings and cached car rows."""
import math
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_number(value: Any) -> float:
    """Coerce an API value to a float, 0 when it isn't a usable number."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.replace(",", "").strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def name_of(value: Any) -> Optional[str]:
    """Resolve ``{"name": ...}`` objects, bare strings and numbers to a name."""
    if isinstance(value, dict):
        value = value.get("name")
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item]


class RawImages(BaseModel):
    model_config = ConfigDict(extra="ignore")

    normal: list[str] = Field(default_factory=list)
    big: list[str] = Field(default_factory=list)

    @field_validator("normal", "big", mode="before")
    @classmethod
    def _urls(cls, value: Any) -> list[str]:
        return _string_list(value)


class RawOdometer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    km: float = 0.0

    @field_validator("km", mode="before")
    @classmethod
    def _km(cls, value: Any) -> float:
        return max(to_number(value), 0.0)


class RawLot(BaseModel):
    """One auction lot of a listing."""

    model_config = ConfigDict(extra="ignore")

    lot: Optional[str] = None
    buy_now: float = 0.0
    bid: float = 0.0
    final_price: float = 0.0
    odometer: RawOdometer = Field(default_factory=RawOdometer)
    images: RawImages = Field(default_factory=RawImages)
    status: Optional[str] = None
    sale_status: Optional[str] = None
    condition: Optional[str] = None
    domain: Optional[str] = None
    damage: Optional[dict[str, Any]] = None
    insurance: Optional[dict[str, Any]] = None

    @field_validator("lot", "status", "sale_status", "condition", "domain", mode="before")
    @classmethod
    def _names(cls, value: Any) -> Optional[str]:
        return name_of(value)

    @field_validator("buy_now", "bid", "final_price", mode="before")
    @classmethod
    def _numbers(cls, value: Any) -> float:
        return max(to_number(value), 0.0)

    @field_validator("odometer", mode="before")
    @classmethod
    def _odometer(cls, value: Any) -> dict[str, Any]:
        if isinstance(value, dict):
            return value
        return {"km": value}

    @field_validator("images", mode="before")
    @classmethod
    def _images(cls, value: Any) -> dict[str, Any]:
        if isinstance(value, dict):
            return value
        if isinstance(value, list):
            return {"normal": value}
        return {}

    @field_validator("damage", "insurance", mode="before")
    @classmethod
    def _details(cls, value: Any) -> Optional[dict[str, Any]]:
        return value if isinstance(value, dict) else None


class RawListing(BaseModel):
    """External API record after boundary validation."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    title: Optional[str] = None
    vin: Optional[str] = None
    color: Optional[str] = None
    fuel: Optional[str] = None
    transmission: Optional[str] = None
    lots: list[RawLot] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> Optional[str]:
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return name_of(value) if not isinstance(value, dict) else None

    @field_validator(
        "manufacturer", "model", "title", "vin", "color", "fuel", "transmission", mode="before"
    )
    @classmethod
    def _names(cls, value: Any) -> Optional[str]:
        return name_of(value)

    @field_validator("year", mode="before")
    @classmethod
    def _year(cls, value: Any) -> Optional[int]:
        year = int(to_number(value))
        return year if year > 1900 else None

    @property
    def primary_lot(self) -> RawLot:
        return self.lots[0] if self.lots else RawLot()


class SaleStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    SOLD = "sold"


class CachedCarRecord(BaseModel):
    """Normalized row stored in the cars cache, keyed by ``id``."""

    id: str = Field(..., description="Stable external listing id (primary key)")
    make: str
    model: str
    year: int
    title: str
    price: int = Field(0, description="buy_now plus markup, whole currency units")
    price_cents: int = 0
    mileage: str = "0"
    vin: Optional[str] = None
    fuel: str
    transmission: str
    color: str
    condition: str
    lot_number: Optional[str] = None
    images: list[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    source_site: str
    sale_status: SaleStatus = SaleStatus.ACTIVE
    is_active: bool = True
    content_hash: str
    last_api_sync: datetime
    car_data: Optional[dict[str, Any]] = Field(default=None, description="Raw payload mirror")

    def to_row(self) -> dict[str, Any]:
        """Convert to a JSON-ready dict for the store."""
        row = self.model_dump(mode="json")
        if row.get("car_data") is None:
            row.pop("car_data", None)
        return row
