"""Payouts engine: gated bill payments over Bill.com (US) and Wise (CA)."""

__version__ = "0.1.0"
