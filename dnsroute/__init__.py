"""Composable DNS resolvers, upstream clients, blocklists and caches."""

__version__ = "0.1.0"