"""Library Lending - core circulation package

This package contains the book-lending workflow and its plumbing:
- Configuration (config.py)
- Storage handle and schema (database.py)
- Records (book.py, loan.py)
- Catalog store, account directory and loan ledger (catalog.py, accounts.py, ledger.py)
- Fine policy (fine_policy.py)
- Lending workflow engine (lending.py)
- HTTP API (api.py) and CLI (cli.py)
"""

__version__ = "1.0.0"
