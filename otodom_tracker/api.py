"""HTTP API: trigger district refreshes, poll the queue, read stored prices."""

from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query
from loguru import logger
from pydantic import BaseModel
from sqlalchemy.orm import Session

from otodom_tracker.analysis import DistrictAnalyzer
from otodom_tracker.config_loader import load_config, select_districts
from otodom_tracker.models import get_engine, get_session_factory, init_db
from otodom_tracker.orchestrator import ScrapeOrchestrator
from otodom_tracker.repositories import AggregateRepository
from otodom_tracker.task_queue import RoomType, TaskQueue

app = FastAPI(title="Otodom Tracker API", version="0.1.0")


def _load_api_config():
    try:
        return load_config()
    except FileNotFoundError:
        fallback = Path(__file__).resolve().parents[1] / "config.yaml"
        return load_config(str(fallback))


_config = _load_api_config()
_engine = get_engine(_config)
_SessionFactory = get_session_factory(_engine)
_db_ready = False
_task_queue: Optional[TaskQueue] = None
_draining = False


class RefreshRequest(BaseModel):
    city: str
    districts: Optional[List[str]] = None
    room_types: Optional[List[str]] = None
    fetch_date: Optional[date] = None
    replace_existing: bool = False


def get_config() -> dict:
    return _config


def get_session():
    global _db_ready
    if not _db_ready:
        init_db(_engine)
        _db_ready = True
    session = _SessionFactory()
    try:
        yield session
    finally:
        session.close()


def get_task_queue() -> TaskQueue:
    global _task_queue
    if _task_queue is None:
        init_db(_engine)
        _task_queue = TaskQueue.from_config(_config, session_factory=_SessionFactory)
    return _task_queue


async def drain_queue() -> None:
    """Work the queue until it is empty; a second concurrent call is a no-op."""
    global _draining
    if _draining:
        logger.info("Queue drain already running")
        return
    _draining = True
    try:
        init_db(_engine)
        session = _SessionFactory()
        orchestrator = ScrapeOrchestrator(_config, get_task_queue(), storage=AggregateRepository(session))
        try:
            await orchestrator.run_until_empty()
        finally:
            await orchestrator.close()
            session.close()
    finally:
        _draining = False


def get_queue_runner():
    return drain_queue


def _task_summary(task) -> dict:
    data = task.to_dict()
    result = data.pop("result", None) or {}
    data["listing_count"] = result.get("count")
    return data


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/scrape/refresh", status_code=202)
def refresh_city(
    request: RefreshRequest,
    background_tasks: BackgroundTasks,
    config: dict = Depends(get_config),
    queue: TaskQueue = Depends(get_task_queue),
    runner=Depends(get_queue_runner),
    session: Session = Depends(get_session),
):
    try:
        districts = select_districts(config, request.city, request.districts)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0]))
    try:
        room_types = [RoomType.parse(r) for r in (request.room_types or [r.value for r in RoomType])]
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if request.replace_existing:
        AggregateRepository(session).delete_aggregates_for_city(request.city)

    fetch_date = (request.fetch_date or date.today()).isoformat()
    tasks = queue.enqueue_batch(request.city, districts, room_types, fetch_date=fetch_date)
    background_tasks.add_task(runner)
    return {
        "enqueued": len(tasks),
        "task_ids": [t.id for t in tasks],
        "status": queue.status(),
    }


@app.get("/api/scrape/status")
def scrape_status(queue: TaskQueue = Depends(get_task_queue)):
    current = queue.current_task
    return {
        "status": queue.status(),
        "statistics": queue.statistics(),
        "current_task": _task_summary(current) if current else None,
    }


@app.get("/api/scrape/tasks")
def scrape_tasks(
    limit: int = Query(default=50, ge=1, le=500),
    queue: TaskQueue = Depends(get_task_queue),
):
    return {
        "pending": [_task_summary(t) for t in queue.pending_tasks()[:limit]],
        "history": [_task_summary(t) for t in queue.completed_tasks(limit=limit)],
    }


@app.get("/api/property-prices")
def property_prices(
    city: str = Query(..., min_length=1),
    room_type: Optional[str] = Query(default=None),
    session: Session = Depends(get_session),
):
    if room_type:
        try:
            room_type = RoomType.parse(room_type).value
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
    rows = AggregateRepository(session).get_aggregates(city=city, room_type=room_type)
    return {"city": city, "items": [row.to_dict() for row in rows]}


@app.get("/api/property-statistics")
def property_statistics(
    city: str = Query(..., min_length=1),
    config: dict = Depends(get_config),
    session: Session = Depends(get_session),
):
    analyzer = DistrictAnalyzer(config, db_session=session)
    stats = analyzer.district_statistics(city)
    if stats.empty:
        raise HTTPException(status_code=404, detail=f"No stored aggregates for {city}")
    stats["fetch_date"] = stats["fetch_date"].astype(str)
    summary = analyzer.city_summary(city)
    return {
        "city": city,
        "districts": json.loads(stats.to_json(orient="records")),
        "room_types": json.loads(summary.to_json(orient="records")),
    }
