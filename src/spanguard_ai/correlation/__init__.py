"""Correlation of anomalies with infrastructure metrics."""
