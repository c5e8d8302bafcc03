"""Logging and metrics for Heimdall."""
