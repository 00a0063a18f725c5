"""Library Circulation - Core Application Package

This package contains the circulation service modules including:
- Transaction lifecycle: borrow, return, renew, fines (lifecycle.py, fines.py)
- Book inventory and member directory (inventory.py, users.py)
- Statistics aggregation (statistics.py)
- API endpoints (api.py)
- CLI interface (main.py)
- Database layer (database.py)
"""
