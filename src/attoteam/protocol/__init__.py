"""Durable state protocol: models, atomic IO, state store and locks."""
