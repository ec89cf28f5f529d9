"""Shared helpers: configuration, types, markers, schemas, prompts."""
