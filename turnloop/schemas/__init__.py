"""Schemas — Pydantic models for the public conversation surface."""
