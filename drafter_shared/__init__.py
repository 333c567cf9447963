"""Helpers shared by the drafter services."""
