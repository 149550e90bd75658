"""Shared infrastructure: configuration, clients, storage and checkpoints."""
