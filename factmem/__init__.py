"""Deterministic fact memory: extract user facts, store them canonically, inject them into prompts."""
