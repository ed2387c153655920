"""Pydantic schemas for ingested records."""

from .schemas import ContactRow, SampleInfo, StrandEnum

__all__ = [
    "ContactRow",
    "SampleInfo",
    "StrandEnum",
]
