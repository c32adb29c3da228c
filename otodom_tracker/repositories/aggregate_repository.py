"""Repository layer for persisted district aggregates."""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from otodom_tracker.models import DistrictAggregate
from otodom_tracker.task_queue import RoomType


def _as_date(value: Union[str, date, None]) -> date:
    if value is None:
        return date.today()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class AggregateRepository:
    """Storage collaborator used by the orchestrator, API and exporters."""

    def __init__(self, session: Session):
        self.session = session

    def delete_aggregates_for_city(self, city: str) -> int:
        try:
            deleted = (
                self.session.query(DistrictAggregate)
                .filter(DistrictAggregate.city == city)
                .delete(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        logger.info(f"Deleted {deleted} stored aggregates for {city}")
        return deleted

    def save_aggregate(
        self,
        city: str,
        district: str,
        result: Dict[str, Any],
        room_type: Union[str, RoomType] = RoomType.TWO_ROOM,
        fetch_date: Union[str, date, None] = None,
    ) -> DistrictAggregate:
        """Insert or replace the aggregate for (city, district, room type, fetch date).

        A failed write is rolled back before the error propagates, so the
        session stays usable for the next task.
        """
        room_value = RoomType.parse(room_type).value
        day = _as_date(fetch_date)
        try:
            return self._upsert(city, district, result, room_value, day)
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def _upsert(self, city: str, district: str, result: Dict[str, Any], room_value: str, day: date) -> DistrictAggregate:
        row = (
            self.session.query(DistrictAggregate)
            .filter(
                DistrictAggregate.city == city,
                DistrictAggregate.district == district,
                DistrictAggregate.room_type == room_value,
                DistrictAggregate.fetch_date == day,
            )
            .one_or_none()
        )
        if row is None:
            row = DistrictAggregate(city=city, district=district, room_type=room_value, fetch_date=day)
            self.session.add(row)

        prices = list(result.get("prices") or [])
        row.listing_count = int(result.get("count") or 0)
        row.reported_count = int(result.get("reportedCount") or 0)
        row.avg_price = result.get("avgPrice") or None
        row.avg_price_per_sqm = result.get("avgPricePerSqm") or None
        row.avg_area = result.get("avgArea") or None
        row.min_price = min(prices) if prices else None
        row.max_price = max(prices) if prices else None
        row.prices = prices
        row.prices_per_sqm = list(result.get("pricesPerSqm") or [])
        row.areas = list(result.get("areas") or [])
        row.diagnostics = result.get("diagnostics")
        self.session.commit()
        return row

    def get_aggregates(
        self,
        city: Optional[str] = None,
        room_type: Optional[Union[str, RoomType]] = None,
        fetch_date: Union[str, date, None] = None,
        latest_only: bool = True,
    ) -> List[DistrictAggregate]:
        """Stored aggregates, newest fetch date only unless ``latest_only`` is False."""
        query = self.session.query(DistrictAggregate)
        if city:
            query = query.filter(DistrictAggregate.city == city)
        if room_type:
            query = query.filter(DistrictAggregate.room_type == RoomType.parse(room_type).value)
        if fetch_date:
            query = query.filter(DistrictAggregate.fetch_date == _as_date(fetch_date))
        rows = query.order_by(DistrictAggregate.city, DistrictAggregate.district).all()

        if latest_only and not fetch_date:
            latest: Dict[tuple, DistrictAggregate] = {}
            for row in rows:
                key = (row.city, row.district, row.room_type)
                if key not in latest or row.fetch_date > latest[key].fetch_date:
                    latest[key] = row
            rows = list(latest.values())

        return sorted(rows, key=lambda r: (r.city, r.district, RoomType(r.room_type).sort_key))

    def list_cities(self) -> List[str]:
        return [c for (c,) in self.session.query(DistrictAggregate.city).distinct().order_by(DistrictAggregate.city)]
