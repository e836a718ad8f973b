"""Storage adapter protocols and the SQLAlchemy implementation."""
