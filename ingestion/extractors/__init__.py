"""
Source adapters and their registry.

Each module builds a SourceAdapter value from settings and a shared
``httpx.AsyncClient``. Pipelines name their adapter in ``Pipeline.chain``.

Adapters:
    coinbase: Coinbase Exchange candles (aggregate)
    fred: FRED series observations (univariate)
    csv_file: Flat CSV history files, local or remote
"""

from typing import Callable, Dict
import httpx
from core.config import Settings
from core.exceptions import ConfigurationError
from ingestion.adapters import SourceAdapter
from ingestion.extractors import coinbase, csv_file, fred

AdapterBuilder = Callable[[Settings, httpx.AsyncClient], SourceAdapter]

ADAPTER_BUILDERS: Dict[str, AdapterBuilder] = {
    "coinbase": coinbase.build,
    "fred": fred.build,
    "csv_file": csv_file.build,
}


def build_adapter(chain: str, settings: Settings, client: httpx.AsyncClient) -> SourceAdapter:
    """Look up and build the adapter a pipeline names"""
    builder = ADAPTER_BUILDERS.get(chain)
    if builder is None:
        raise ConfigurationError(
            f"Unknown source adapter: {chain}",
            context={"chain": chain, "available": ", ".join(sorted(ADAPTER_BUILDERS))}
        )
    return builder(settings, client)


__all__ = ["ADAPTER_BUILDERS", "build_adapter"]
