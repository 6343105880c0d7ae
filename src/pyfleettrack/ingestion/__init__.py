"""Ingestion of producer position payloads."""

from pyfleettrack.ingestion.positions import parse_position, parse_positions

__all__ = ["parse_position", "parse_positions"]
