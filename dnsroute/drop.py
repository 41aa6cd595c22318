"""Resolver that drops every query."""

from __future__ import annotations

import logging

import dns.message

from .base import ClientInfo, Resolver, query_name

log = logging.getLogger(__name__)


class DropResolver(Resolver):
    """Returns ``None`` for every query, telling the listener to close the connection."""

    def __init__(self, id: str) -> None:
        self.id = id

    def resolve(self, query: dns.message.Message, client: ClientInfo) -> None:
        log.debug("%s: dropping query %s", self.id, query_name(query))
        return None

    def __str__(self) -> str:
        return self.id