"""Routing domain layer."""
