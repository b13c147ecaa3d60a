"""In-process application layer around the lvflow engine."""
