"""Collaborator backends: history storage, trace sources and cache."""
