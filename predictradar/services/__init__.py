"""Batch services that read and write the prediction store."""
