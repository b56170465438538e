"""Normalization, aggregation, detection, alerting and the indexing cycle."""
