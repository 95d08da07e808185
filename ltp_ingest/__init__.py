"""
LTP Ingest - keeps the last-traded-price of tracked instruments fresh
in a per-day price history, via a polling or streaming broker transport.
"""

__version__ = "0.1.0"
