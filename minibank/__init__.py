"""
Minibank Ledger

Account registration, deposits, withdrawals and transfers over a
transactional store, with Decimal balances and an immutable
transaction history per account.
"""

__version__ = "1.0.0"
