"""Map raw API listings onto cached car rows."""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Union

import orjson
from pydantic import ValidationError

from carsync.jobs.metrics import SyncMetrics
from carsync.transform.models import CachedCarRecord, RawListing, RawLot, SaleStatus, name_of

logger = logging.getLogger(__name__)

DEFAULT_YEAR = 2020
DEFAULT_PRICE_MARKUP = 2300.0
UNKNOWN = "Unknown"
DEFAULT_SOURCE_SITE = "external"

# Fields left out of the content hash: they change on every sync
HASH_EXCLUDED = {"content_hash", "last_api_sync", "car_data"}


class RejectReason(str, Enum):
    MALFORMED = "malformed"
    MISSING_ID = "missing_id"
    MISSING_MAKE = "missing_make"
    MISSING_MODEL = "missing_model"


@dataclass(frozen=True)
class Rejection:
    reason: RejectReason
    detail: str = ""


def parse_listing(raw: Any) -> Union[RawListing, Rejection]:
    """Validate a raw payload into a RawListing, or say why it can't be used."""
    if not isinstance(raw, dict):
        return Rejection(RejectReason.MALFORMED, f"expected object, got {type(raw).__name__}")

    data = dict(raw)
    data["manufacturer"] = name_of(data.get("manufacturer")) or name_of(data.get("make"))

    # A flat record carries its lot fields at the top level
    lots = data.get("lots")
    lots = [lot for lot in lots if isinstance(lot, dict)] if isinstance(lots, list) else []
    data["lots"] = lots or [raw]

    try:
        listing = RawListing.model_validate(data)
    except ValidationError as e:
        return Rejection(RejectReason.MALFORMED, str(e.errors()[:1]))

    if not listing.id:
        return Rejection(RejectReason.MISSING_ID)
    if not listing.manufacturer:
        return Rejection(RejectReason.MISSING_MAKE, f"id={listing.id}")
    if not listing.model:
        return Rejection(RejectReason.MISSING_MODEL, f"id={listing.id}")
    return listing


def derive_sale_status(lot: RawLot) -> SaleStatus:
    """Resolve the lot's sale status from its status string or code."""
    for value in (lot.sale_status, lot.status):
        if not value:
            continue
        value = value.lower()
        if value in ("3", "sold"):
            return SaleStatus.SOLD
        if value in ("2", "pending", "reserved"):
            return SaleStatus.PENDING
        if value in ("1", "active", "sale"):
            return SaleStatus.ACTIVE
    return SaleStatus.ACTIVE


def derive_price(lot: RawLot, markup: float) -> int:
    """buy_now (or bid when there is no buy-now price) plus the markup."""
    base = lot.buy_now or lot.bid
    if base <= 0:
        return 0
    return int(round(base + markup))


def compute_content_hash(fields: dict[str, Any]) -> str:
    """Stable SHA-256 over the normalized field set."""
    payload = {k: v for k, v in fields.items() if k not in HASH_EXCLUDED}
    return hashlib.sha256(orjson.dumps(payload, option=orjson.OPT_SORT_KEYS)).hexdigest()


class RecordTransformer:
    """Turns RawListing payloads into CachedCarRecord rows.

    Every row produced by one transformer shares the same ``last_api_sync``
    timestamp, so transforming the same payload twice gives equal records.
    """

    def __init__(
        self,
        price_markup: float = DEFAULT_PRICE_MARKUP,
        synced_at: Optional[datetime] = None,
        keep_raw: bool = False,
    ):
        self.price_markup = price_markup
        self.synced_at = synced_at or datetime.now(timezone.utc)
        self.keep_raw = keep_raw

    def transform(self, raw: Any) -> Optional[CachedCarRecord]:
        record, _ = self.transform_with_reason(raw)
        return record

    def transform_with_reason(self, raw: Any) -> tuple[Optional[CachedCarRecord], Optional[Rejection]]:
        parsed = parse_listing(raw)
        if isinstance(parsed, Rejection):
            return None, parsed
        try:
            return self._build(parsed, raw), None
        except ValidationError as e:
            return None, Rejection(RejectReason.MALFORMED, str(e.errors()[:1]))

    def _build(self, listing: RawListing, raw: dict[str, Any]) -> CachedCarRecord:
        lot = listing.primary_lot
        year = listing.year or DEFAULT_YEAR
        price = derive_price(lot, self.price_markup)
        images = lot.images.normal or lot.images.big

        fields: dict[str, Any] = {
            "id": listing.id,
            "make": listing.manufacturer,
            "model": listing.model,
            "year": year,
            "title": listing.title or f"{listing.manufacturer} {listing.model} {year}",
            "price": price,
            "price_cents": price * 100,
            "mileage": str(int(lot.odometer.km)),
            "vin": listing.vin,
            "fuel": listing.fuel or UNKNOWN,
            "transmission": listing.transmission or UNKNOWN,
            "color": listing.color or UNKNOWN,
            "condition": (lot.condition or "unknown").lower(),
            "lot_number": lot.lot,
            "images": images,
            "image_url": images[0] if images else None,
            "source_site": lot.domain or DEFAULT_SOURCE_SITE,
            "sale_status": derive_sale_status(lot).value,
            "is_active": True,
        }
        fields["content_hash"] = compute_content_hash(fields)

        return CachedCarRecord(
            **fields,
            last_api_sync=self.synced_at,
            car_data=raw if self.keep_raw else None,
        )

    def transform_page(
        self,
        raws: Iterable[Any],
        metrics: Optional[SyncMetrics] = None,
    ) -> list[CachedCarRecord]:
        """Transform a page, dropping rejects and duplicate ids (last one wins)."""
        records: dict[str, CachedCarRecord] = {}
        for raw in raws:
            record, rejection = self.transform_with_reason(raw)
            if rejection:
                logger.debug(f"Dropped listing: {rejection.reason.value} {rejection.detail}")
                if metrics:
                    metrics.record_rejection(rejection.reason.value)
                continue
            records[record.id] = record
        if metrics:
            metrics.rows_valid += len(records)
        return list(records.values())
