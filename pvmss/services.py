# -*- coding: utf-8 -*-
"""
PVMSS shared state

Everything the request handlers share lives on one ConsoleServices object built
by create_app() and stored in app.extensions['pvmss']. No module-level
singletons, so tests can build as many apps as they like.
"""

from dataclasses import dataclass
from typing import Any, Callable

from flask import current_app


@dataclass
class ConsoleServices:
    db: Any                   # pvmss.core.db.PVMSSDB
    proxmox_config: Any       # pvmss.core.config.ProxmoxConfig
    server_config: Any        # pvmss.core.config.ServerConfig
    sessions: Any             # pvmss.utils.auth.SessionStore
    pending: Any              # ConsoleSessionRegistry: ticket route -> console page
    handoff: Any              # ConsoleSessionRegistry: console page -> relay
    tickets: Any              # pvmss.console.tickets.TicketAcquirer
    relays: Any               # pvmss.console.relay.ActiveRelays
    client_factory: Callable  # builds a ProxmoxClient(config, auth_cookie=, csrf_token=)
    dialer: Callable          # dial_upstream(target) -> UpstreamSocket
    rate_limiter: Any         # pvmss.app.RateLimiter


def get_services() -> ConsoleServices:
    return current_app.extensions['pvmss']
