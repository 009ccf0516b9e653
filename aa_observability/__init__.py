"""Prometheus metrics for the consent and ingestion core."""
