"""Shared infrastructure for the AIDA context engine."""
