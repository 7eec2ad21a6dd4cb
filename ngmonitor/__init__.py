"""Cluster topology tracking, continuous profiling, profile storage and queries."""

__version__ = "0.1.0"