"""
Storage Module for BillFlow.

SQLite persistence:
    - Database: schema and per-operation connections
    - Repository: documents, zones, OCR passes, bills, audit, masks,
      calibration and the retry queue
    - AliasStore / MatchHistoryStore: vendor SKU mappings
    - SqliteCatalog: product lookup and creation
"""

from .database import Database
from .repository import Repository
from .aliases import AliasStore, MatchHistory, MatchHistoryStore, SkuAlias
from .catalog import Product, SqliteCatalog

__all__ = [
    'Database',
    'Repository',
    'AliasStore',
    'MatchHistory',
    'MatchHistoryStore',
    'SkuAlias',
    'Product',
    'SqliteCatalog',
]
