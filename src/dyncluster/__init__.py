"""Ephemeral database cluster lifecycle orchestration."""
