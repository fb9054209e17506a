"""Adapters layer for Clinical-Sync.

This module contains adapters that interface with external systems (DuckDB,
REDCap, PDF/CSV output). Adapters implement Port interfaces defined in the
domain layer and translate between external formats and domain models.
"""
