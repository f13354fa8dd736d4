"""
Caisse Ledger

Installment and advance ledger engine: deterministic payment schedules,
payment reconciliation, delay penalties, completion bonuses, emergency
support advances and refund workflows, all computed with Decimal.
"""

__version__ = "1.0.0"
