"""
P2P Lending Core

Loan agreement lifecycle (request, claim, accept, reject, cancel, complete)
with a multi-method payment settlement layer. Financial math uses Decimal
and every state change is written to a hash-chained audit trail.
"""

__version__ = "1.0.0"
