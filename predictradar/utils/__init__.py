"""Shared utilities: errors, time helpers and request pacing."""
