"""LVFlow engine: radial low-voltage network power flow and regulation."""
