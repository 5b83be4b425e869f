"""Seller records -- model, repository, staff directory and sync-aware service."""
