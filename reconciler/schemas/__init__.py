"""Pydantic result schemas."""
