"""Chat persistence in Postgres (optional).

Postgres drivers are imported lazily inside functions so the relay can run without
DB access; every entry point reports "Postgres not configured" instead of raising.
"""
