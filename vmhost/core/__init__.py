"""Core definitions shared across components."""
