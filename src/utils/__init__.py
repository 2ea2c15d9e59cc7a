"""WAL archiver - shared utilities."""
