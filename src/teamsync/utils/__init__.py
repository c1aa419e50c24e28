"""Logging, error handling and configuration."""
