"""blockbench.data

Historical market data: providers fetch series, the cache answers
point-in-time questions about them.
"""

from .historical import HistoricalDataCache
from .provider import CsvProvider, DataProvider, StaticProvider, SubgraphProvider, build_provider

__all__ = [
    "CsvProvider",
    "DataProvider",
    "HistoricalDataCache",
    "StaticProvider",
    "SubgraphProvider",
    "build_provider",
]
