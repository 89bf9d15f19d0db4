"""Idempotent single-host provisioning engine."""
