"""Core infrastructure: logging, errors, database, metrics."""
