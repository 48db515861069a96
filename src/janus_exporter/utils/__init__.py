"""Shared utilities for the Janus events exporter."""
