"""Shared helpers for taskbeat tests."""
