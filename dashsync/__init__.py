"""
Dashboard sync engine.

Keeps a dashboard's metric snapshot current from two sources: periodic
polling and a server push channel.

This package provides:
- A priority-weighted polling scheduler with exponential backoff
- A reconnecting WebSocket push channel with heartbeat and pub/sub dispatch
- A coordinator combining both into one snapshot with full and targeted refresh
- Configuration management and a small read-model API
"""

__version__ = "0.1.0"
