"""Inventory quantity consistency core: stock levels, event ledger, batches and FEFO."""

__version__ = "1.0.0"
