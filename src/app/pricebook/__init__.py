"""Pricebook synchronization -- pull, push, retry and health for pricebook entities.

Provides the sync engine (override-preserving merge), the pending-sync
queue, the durable job runner and scheduler, the health and duplicate
analyzer, pricebook providers, and PostgresPricebookStore for persistence.
"""
