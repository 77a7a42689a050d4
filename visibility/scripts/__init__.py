"""Operational command line scripts."""
