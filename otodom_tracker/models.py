"""Database models for the Otodom district price tracker."""

import os
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from otodom_tracker.config_loader import get_storage_config


def now_utc():
    return datetime.now(timezone.utc)


Base = declarative_base()


class DistrictAggregate(Base):
    """Listing statistics for one city district, room type and fetch date."""

    __tablename__ = "district_aggregates"
    __table_args__ = (
        UniqueConstraint("city", "district", "room_type", "fetch_date", name="uq_district_aggregate"),
        Index("ix_district_aggregates_city_fetch_date", "city", "fetch_date"),
    )

    id = Column(Integer, primary_key=True)

    # Target
    city = Column(String(50), nullable=False, index=True)
    district = Column(String(100), nullable=False)
    room_type = Column(String(20), nullable=False)
    fetch_date = Column(Date, nullable=False)

    # Statistics
    listing_count = Column(Integer, nullable=False, default=0)
    reported_count = Column(Integer, nullable=False, default=0)
    avg_price = Column(Integer, nullable=True)
    avg_price_per_sqm = Column(Integer, nullable=True)
    avg_area = Column(Float, nullable=True)
    min_price = Column(Integer, nullable=True)
    max_price = Column(Integer, nullable=True)

    # Raw arrays kept for percentile work
    prices = Column(JSON, nullable=True)
    prices_per_sqm = Column(JSON, nullable=True)
    areas = Column(JSON, nullable=True)
    diagnostics = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=now_utc)

    def __repr__(self):
        return (
            f"<DistrictAggregate(city='{self.city}', district='{self.district}', "
            f"room_type='{self.room_type}', count={self.listing_count})>"
        )

    def to_dict(self):
        return {
            "city": self.city,
            "district": self.district,
            "room_type": self.room_type,
            "fetch_date": self.fetch_date.isoformat() if self.fetch_date else None,
            "count": self.listing_count,
            "reported_count": self.reported_count,
            "avg_price": self.avg_price,
            "avg_price_per_sqm": self.avg_price_per_sqm,
            "avg_area": self.avg_area,
            "min_price": self.min_price,
            "max_price": self.max_price,
        }


class ScrapeTaskRecord(Base):
    """One queued, running or finished district scrape task."""

    __tablename__ = "scrape_tasks"
    __table_args__ = (
        # At most one task may hold the in-progress slot, across processes.
        Index(
            "uq_scrape_tasks_in_progress",
            "status",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
            postgresql_where=text("status = 'in_progress'"),
        ),
        Index("ix_scrape_tasks_status_position", "status", "position"),
    )

    id = Column(String(32), primary_key=True)

    # Target
    city = Column(String(50), nullable=False)
    district = Column(String(100), nullable=False)
    search_slug = Column(String(100), nullable=False)
    room_type = Column(String(20), nullable=False)
    fetch_date = Column(String(10), nullable=False)

    # Queue state; position orders waiting tasks and, separately, the history
    status = Column(String(20), nullable=False, default="pending")
    priority = Column(Integer, nullable=False, default=0)
    position = Column(Integer, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    not_before = Column(DateTime, nullable=True)

    # Timing (naive UTC)
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Outcome
    error = Column(Text, nullable=True)
    error_type = Column(String(40), nullable=True)
    result = Column(JSON, nullable=True)

    def __repr__(self):
        return (
            f"<ScrapeTaskRecord(id='{self.id}', {self.city}/{self.district}/{self.room_type}, "
            f"status='{self.status}')>"
        )


def get_engine(config: dict, backend: Optional[str] = None):
    """Create database engine based on configuration."""
    storage = get_storage_config(config)
    backend = backend or storage.get("backend", "sqlite")

    if backend == "sqlite":
        db_path = storage.get("sqlite", {}).get("database_path", "data/otodom_tracker.db")
        return create_engine(f"sqlite:///{db_path}")
    elif backend == "postgresql":
        pg_config = storage.get("postgresql", {}) or {}
        db_url = str(pg_config.get("url") or os.getenv("DB_URL") or "").strip()
        if db_url:
            return create_engine(db_url)
        host = pg_config.get("host", "localhost")
        port = pg_config.get("port", "5432")
        database = pg_config.get("database", "otodom_tracker")
        user = pg_config.get("user", "tracker")
        password = pg_config.get("password", "")
        return create_engine(f"postgresql://{user}:{password}@{host}:{port}/{database}")
    else:
        raise ValueError(f"Unsupported database backend: {backend}")


def init_db(engine):
    """Initialize database tables."""
    Base.metadata.create_all(engine)


def get_session_factory(engine):
    """Get session factory for database operations."""
    return sessionmaker(bind=engine)
