"""Repository layer."""

from otodom_tracker.repositories.aggregate_repository import AggregateRepository

__all__ = ["AggregateRepository"]
