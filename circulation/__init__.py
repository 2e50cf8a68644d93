"""Library Circulation - Core Application Package

This package contains the core application modules including:
- API endpoints (api.py)
- Borrowing lifecycle (borrowing.py)
- Inventory ledger (ledger.py)
- Book and borrower catalog (catalog.py)
- CLI interface (main.py)
- Data models (models.py)
- Database layer (database.py)
"""

__version__ = "2.0.0"
