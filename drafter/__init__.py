"""Resumable long-form article drafting pipeline."""
