"""
PeerFund Lending Core

Peer-to-peer lending backend: loan requests, offers, amortized repayment
schedules, an internal wallet ledger and payment-gateway money movement.
All monetary math uses Decimal with half-up rounding to cents.
"""

__version__ = "1.0.0"
