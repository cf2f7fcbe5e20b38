"""Live dashboard channel: server hub and reconnecting client."""
