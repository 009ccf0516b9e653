"""Operator API over consents, their event log and fetch batches."""
