"""pg_partialcopy: copy a PostgreSQL database, or a filtered subset of it, from one consistent snapshot."""

__version__ = "0.1.0"
