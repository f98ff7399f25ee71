"""Validation, archive merge, history import and PDF preflight services."""
