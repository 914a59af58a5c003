"""Prometheus metrics for the relay plane."""
