"""Shipment Ledger - FIFO stock allocation and supplier settlement."""
__version__ = "1.0.0"
