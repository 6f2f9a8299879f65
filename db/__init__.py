"""
Database module for royalty calculation storage and retrieval.

This module provides database access layer for:
- Contracts, royalty rules and organization calculation settings
- Imported sales transactions and confirmed ERP field mappings
- Calculation blueprints (versioned)
- Calculation runs, line items and approval status
- ERP mapping rule sets and execution logs
"""

from .database import get_db_connection, init_connection_pool, close_connection_pool
from .royalty_repository import RoyaltyRepository
from .erp_mapping_repository import ErpMappingRepository

__all__ = [
    'get_db_connection',
    'init_connection_pool',
    'close_connection_pool',
    'RoyaltyRepository',
    'ErpMappingRepository',
]
