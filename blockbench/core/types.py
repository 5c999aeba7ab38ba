"""blockbench.core.types

Lightweight dataclasses for hot-path objects.

Pydantic models own IO boundaries; dataclasses keep the simulation loop lean.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


@dataclass(frozen=True, slots=True)
class PricePoint:
    timestamp: datetime
    price: float


@dataclass(frozen=True, slots=True)
class RatePoint:
    timestamp: datetime
    supply_apy: float  # percent
    borrow_apy: float  # percent


@dataclass(frozen=True, slots=True)
class Apy:
    supply_apy: float
    borrow_apy: float


class SeriesKind(StrEnum):
    PRICE = "price"
    RATE = "rate"
