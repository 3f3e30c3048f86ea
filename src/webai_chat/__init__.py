"""Tier-gated multi-model chat client."""
