"""Batch services: job runner and scheduler."""
