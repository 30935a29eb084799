"""Shared utilities: logging, context propagation and tracing."""
