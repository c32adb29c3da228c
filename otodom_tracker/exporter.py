"""Export module for the Otodom district price tracker."""

from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import pandas as pd
from loguru import logger

from otodom_tracker.config_loader import get_storage_config
from otodom_tracker.models import DistrictAggregate, get_engine, get_session_factory


def export_to_csv(
    config: dict,
    output_dir: Optional[str] = None,
    city: Optional[str] = None,
) -> Dict[str, str]:
    """Export stored district aggregates to CSV.

    Args:
        config: Configuration dictionary
        output_dir: Output directory (uses config default if None)
        city: Only export this city

    Returns:
        Dictionary with paths to exported files
    """
    if output_dir is None:
        storage = get_storage_config(config)
        output_dir = storage.get("exports", {}).get("csv_path", "data/exports/csv")

    Path(output_dir).mkdir(parents=True, exist_ok=True)

    engine = get_engine(config)
    Session = get_session_factory(engine)
    session = Session()

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    paths = {}

    try:
        query = session.query(
            DistrictAggregate.city,
            DistrictAggregate.district,
            DistrictAggregate.room_type,
            DistrictAggregate.fetch_date,
            DistrictAggregate.listing_count,
            DistrictAggregate.reported_count,
            DistrictAggregate.avg_price,
            DistrictAggregate.avg_price_per_sqm,
            DistrictAggregate.avg_area,
            DistrictAggregate.min_price,
            DistrictAggregate.max_price,
            DistrictAggregate.created_at,
        )
        if city:
            query = query.filter(DistrictAggregate.city == city)
        query = query.order_by(DistrictAggregate.city, DistrictAggregate.district, DistrictAggregate.fetch_date)

        df = pd.read_sql(query.statement, session.bind)
        if not df.empty:
            suffix = city or "all"
            path = f"{output_dir}/district_aggregates_{suffix}_{timestamp}.csv"
            df.to_csv(path, index=False)
            paths["aggregates"] = path
            logger.info(f"Exported {len(df)} aggregates to {path}")
        else:
            logger.warning("No aggregates to export")
    finally:
        session.close()

    return paths
