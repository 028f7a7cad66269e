# medstock/models/__init__.py
"""
ORM models of the stock engine.
"""

from medstock.models.inventory_item import InventoryItem
from medstock.models.stock_batch import StockBatch
from medstock.models.stock_movement import StockMovement
from medstock.models.stock_reservation import StockReservation

__all__ = ["InventoryItem", "StockBatch", "StockMovement", "StockReservation"]
