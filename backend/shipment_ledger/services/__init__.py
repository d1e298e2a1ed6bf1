"""Ledger services"""
# Importing the package registers the stock conservation flush guard
from shipment_ledger.services import invariants  # noqa: F401
