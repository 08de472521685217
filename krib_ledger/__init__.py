"""
Krib Ledger - Source Package

The shared-expense ledger behind a household app: who paid what,
who owes what, and the smallest set of payments that settles it.

DESIGN PRINCIPLES:
1. Balances are always recomputed from the ledger, never cached
2. Settlements are suggestions until a member confirms them
3. Nothing is hard-deleted - settled rows stay as history
4. Every write is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Krib Team"
