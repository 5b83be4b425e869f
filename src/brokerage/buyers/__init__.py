"""Buyer records -- model, repository and sync-aware service."""
