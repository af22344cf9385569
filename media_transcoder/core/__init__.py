"""Shared exceptions, settings and helpers."""
