"""Analysis module for the Otodom district price tracker.

Turns stored per-district aggregates back into listing-level frames and
computes distribution statistics per district and room type.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd
from loguru import logger
from sqlalchemy.orm import Session

from otodom_tracker.config_loader import load_config
from otodom_tracker.models import get_engine, get_session_factory
from otodom_tracker.repositories import AggregateRepository
from otodom_tracker.task_queue import RoomType

ROOM_ORDER = [r.value for r in RoomType]

STAT_COLUMNS = [
    "district",
    "room_type",
    "fetch_date",
    "listings",
    "reported",
    "avg_price",
    "avg_price_per_sqm",
    "median_price_per_sqm",
    "p25_price_per_sqm",
    "p75_price_per_sqm",
    "min_price_per_sqm",
    "max_price_per_sqm",
    "avg_area",
    "min_price",
    "max_price",
]


class DistrictAnalyzer:
    """Distribution statistics over stored district aggregates."""

    def __init__(self, config: Dict[str, Any], db_session: Optional[Session] = None):
        self.config = config
        self.analysis_config = config.get("analysis", {}) or {}

        if db_session:
            self.session = db_session
            self.owns_session = False
        else:
            engine = get_engine(config)
            SessionFactory = get_session_factory(engine)
            self.session = SessionFactory()
            self.owns_session = True
        self.repository = AggregateRepository(self.session)

    def close(self):
        """Close database session if owned."""
        if self.owns_session:
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def get_listing_data(self, city: str, room_type: Optional[str] = None) -> pd.DataFrame:
        """One row per stored listing for the latest fetch of each district/room type."""
        records = []
        for row in self.repository.get_aggregates(city=city, room_type=room_type):
            prices = row.prices or []
            per_sqm = row.prices_per_sqm or []
            areas = row.areas or [None] * len(prices)
            for price, ppsqm, area in zip(prices, per_sqm, areas):
                records.append(
                    {
                        "city": row.city,
                        "district": row.district,
                        "room_type": row.room_type,
                        "fetch_date": row.fetch_date,
                        "reported": row.reported_count,
                        "price": price,
                        "price_per_sqm": ppsqm,
                        "area": area,
                    }
                )
        df = pd.DataFrame.from_records(
            records,
            columns=["city", "district", "room_type", "fetch_date", "reported", "price", "price_per_sqm", "area"],
        )
        df["area"] = pd.to_numeric(df["area"], errors="coerce")
        return df

    def district_statistics(self, city: str, room_type: Optional[str] = None) -> pd.DataFrame:
        """Per district and room type: mean, median, quartiles and range of price per m²."""
        df = self.get_listing_data(city, room_type)
        if df.empty:
            return pd.DataFrame(columns=STAT_COLUMNS)

        grouped = df.groupby(["district", "room_type", "fetch_date"], sort=False)
        stats = grouped.agg(
            listings=("price", "size"),
            reported=("reported", "max"),
            avg_price=("price", "mean"),
            avg_price_per_sqm=("price_per_sqm", "mean"),
            median_price_per_sqm=("price_per_sqm", "median"),
            p25_price_per_sqm=("price_per_sqm", lambda s: s.quantile(0.25)),
            p75_price_per_sqm=("price_per_sqm", lambda s: s.quantile(0.75)),
            min_price_per_sqm=("price_per_sqm", "min"),
            max_price_per_sqm=("price_per_sqm", "max"),
            avg_area=("area", "mean"),
            min_price=("price", "min"),
            max_price=("price", "max"),
        ).reset_index()

        for column in ["avg_price", "avg_price_per_sqm", "median_price_per_sqm", "p25_price_per_sqm", "p75_price_per_sqm"]:
            stats[column] = stats[column].round().astype(int)
        stats["avg_area"] = stats["avg_area"].round(2)

        stats["room_type"] = pd.Categorical(stats["room_type"], categories=ROOM_ORDER, ordered=True)
        stats = stats.sort_values(["district", "room_type"]).reset_index(drop=True)
        stats["room_type"] = stats["room_type"].astype(str)
        return stats[STAT_COLUMNS]

    def city_summary(self, city: str) -> pd.DataFrame:
        """Room-type level statistics across every district of a city."""
        df = self.get_listing_data(city)
        if df.empty:
            return pd.DataFrame(columns=["room_type", "districts", "listings", "median_price_per_sqm", "avg_price"])

        summary = df.groupby("room_type").agg(
            districts=("district", "nunique"),
            listings=("price", "size"),
            median_price_per_sqm=("price_per_sqm", "median"),
            avg_price=("price", "mean"),
        ).reset_index()
        summary["median_price_per_sqm"] = summary["median_price_per_sqm"].round().astype(int)
        summary["avg_price"] = summary["avg_price"].round().astype(int)
        summary["room_type"] = pd.Categorical(summary["room_type"], categories=ROOM_ORDER, ordered=True)
        summary = summary.sort_values("room_type").reset_index(drop=True)
        summary["room_type"] = summary["room_type"].astype(str)
        return summary

    def export_summary(self, city: str, output_dir: Optional[str] = None) -> Dict[str, str]:
        """Write district statistics to CSV and return the path."""
        output_dir = output_dir or self.analysis_config.get("output_dir", "data/analysis")
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

        paths = {}
        stats = self.district_statistics(city)
        if not stats.empty:
            path = Path(output_dir) / f"district_stats_{city}_{timestamp}.csv"
            stats.to_csv(path, index=False)
            paths["district_statistics"] = str(path)
            logger.info(f"Exported district statistics to {path}")
        return paths


def run_analysis(config_path: Optional[str] = None, city: str = "warszawa", export: bool = True) -> Dict[str, Any]:
    """Run complete analysis for one city."""
    config = load_config(config_path)

    results: Dict[str, Any] = {
        "city": city,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    with DistrictAnalyzer(config) as analyzer:
        stats = analyzer.district_statistics(city)
        results["district_statistics"] = stats.to_dict("records")
        results["city_summary"] = analyzer.city_summary(city).to_dict("records")
        if export:
            results["exported_files"] = analyzer.export_summary(city)
    return results
