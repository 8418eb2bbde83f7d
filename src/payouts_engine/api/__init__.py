"""HTTP API for the payouts engine."""
