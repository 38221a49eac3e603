"""Pydantic schemas for request and response bodies."""
