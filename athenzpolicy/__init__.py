"""Fetch, verify and cache signed Athenz role policies and check access against them."""

__version__ = "0.1.0"