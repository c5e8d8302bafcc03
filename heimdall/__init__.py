"""Heimdall: encrypted configuration injection for Kubernetes workloads."""

__version__ = "0.1.0"
