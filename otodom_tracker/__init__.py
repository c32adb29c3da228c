"""Otodom district price tracker."""

__version__ = "0.1.0"
