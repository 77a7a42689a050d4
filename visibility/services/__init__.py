"""Exclusion engine and user visibility services."""
