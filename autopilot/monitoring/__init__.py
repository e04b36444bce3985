"""Prometheus metrics and in-memory alerts for workflow runs and collaborator calls."""
