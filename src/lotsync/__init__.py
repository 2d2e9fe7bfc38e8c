# File: src/lotsync/__init__.py
"""
lotsync - parking-space occupancy reconciliation and billing engine

Layers:
- domain: models, error taxonomy, billing strategies
- infrastructure: repositories (memory, SQLAlchemy, MongoDB), change feeds, factories
- application: reconciliation, status transitions, lot administration, propagation
"""

__version__ = "0.1.0"
