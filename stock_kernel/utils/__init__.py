"""Deterministic helpers shared by services and the config loader."""
