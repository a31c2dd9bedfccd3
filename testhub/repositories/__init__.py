"""Persistence contracts and their SQLAlchemy implementations."""
