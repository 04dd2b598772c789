"""Forked-chain process management."""
