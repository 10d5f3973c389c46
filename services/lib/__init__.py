"""Shared plumbing for BeoSound 5c services."""
