"""Listing, page and task-level result containers."""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class ExtractedListing:
    price: int
    area: float
    price_per_sqm: int

    @classmethod
    def build(cls, price: int, area: float) -> "ExtractedListing":
        return cls(price=int(price), area=float(area), price_per_sqm=round_half_up(price / area))


@dataclass
class PageExtractionResult:
    listings: List[ExtractedListing] = field(default_factory=list)
    reported_count: int = 0
    page_number: int = 1
    url: Optional[str] = None
    card_strategy: Optional[str] = None
    consent_wall_present: bool = False
    element_counts: Dict[str, int] = field(default_factory=dict)
    cards_seen: int = 0
    rejected: int = 0


@dataclass
class AggregateResult:
    """Running aggregate for one task, built page by page."""

    prices: List[int] = field(default_factory=list)
    prices_per_sqm: List[int] = field(default_factory=list)
    areas: List[float] = field(default_factory=list)
    reported_count: int = 0
    pages_processed: int = 0
    diagnostics: Dict[str, Any] = field(
        default_factory=lambda: {
            "botDetected": False,
            "blockReason": None,
            "consent": None,
            "cardStrategies": [],
            "elementCounts": [],
            "errors": [],
        }
    )
    finalized: bool = False

    def add_page(self, page: PageExtractionResult) -> None:
        if self.finalized:
            raise RuntimeError("Aggregate already finalized")
        for listing in page.listings:
            self.prices.append(listing.price)
            self.prices_per_sqm.append(listing.price_per_sqm)
            self.areas.append(listing.area)
        if page.reported_count and not self.reported_count:
            self.reported_count = page.reported_count
        self.pages_processed += 1
        self.diagnostics["cardStrategies"].append(page.card_strategy)
        self.diagnostics["elementCounts"].append(page.element_counts)

    def record_error(self, message: str) -> None:
        self.diagnostics["errors"].append(message)

    @property
    def count(self) -> int:
        return len(self.prices)

    @property
    def avg_price(self) -> int:
        return round_half_up(sum(self.prices) / len(self.prices)) if self.prices else 0

    @property
    def avg_price_per_sqm(self) -> int:
        return round_half_up(sum(self.prices_per_sqm) / len(self.prices_per_sqm)) if self.prices_per_sqm else 0

    @property
    def avg_area(self) -> float:
        return round(sum(self.areas) / len(self.areas), 2) if self.areas else 0.0

    def finalize(self) -> Dict[str, Any]:
        """Freeze the aggregate and return its wire shape."""
        if not self.finalized:
            self.diagnostics["pagesProcessed"] = self.pages_processed
            self.finalized = True
        return self.to_dict()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "reportedCount": self.reported_count,
            "avgPrice": self.avg_price,
            "avgPricePerSqm": self.avg_price_per_sqm,
            "avgArea": self.avg_area,
            "prices": list(self.prices),
            "pricesPerSqm": list(self.prices_per_sqm),
            "areas": list(self.areas),
            "diagnostics": dict(self.diagnostics),
        }
