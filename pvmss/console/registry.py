# -*- coding: utf-8 -*-
"""
Console session registry

Holds the short-lived credential bundle between the ticket request and the
page / relay step. Entries are single-use: a take removes them, expired
entries are dropped without being served.
"""

import time
import threading
import logging
from dataclasses import dataclass, replace
from typing import Dict, NamedTuple, Optional

from pvmss.constants import CONSOLE_SESSION_TTL
from pvmss.utils.sanitization import mask_secret


class SessionKey(NamedTuple):
    """(visitor session, VM, node) - one pending console per VM per visitor"""
    visitor_id: str
    vmid: int
    node: str


@dataclass(repr=False)
class ConsoleSession:
    vmid: int
    node: str
    proxmox_host: str
    port: int
    ticket: str
    auth_cookie: str
    csrf_token: Optional[str] = None
    created_at: float = 0.0
    expires_at: float = 0.0
    username: Optional[str] = None
    source: Optional[str] = None

    def __post_init__(self):
        if self.vmid <= 0:
            raise ValueError(f"vmid must be positive, got {self.vmid}")
        if not self.node:
            raise ValueError("node must not be empty")
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")

    @classmethod
    def issue(cls, vmid: int, node: str, proxmox_host: str, port: int, ticket: str,
              auth_cookie: str, csrf_token: str = None, username: str = None,
              source: str = None, ttl: float = CONSOLE_SESSION_TTL, now: float = None) -> 'ConsoleSession':
        now = time.time() if now is None else now
        return cls(vmid=vmid, node=node, proxmox_host=proxmox_host, port=port,
                   ticket=ticket, auth_cookie=auth_cookie, csrf_token=csrf_token,
                   created_at=now, expires_at=now + ttl,
                   username=username, source=source)

    def renewed(self, ttl: float = CONSOLE_SESSION_TTL, now: float = None) -> 'ConsoleSession':
        """Copy with a fresh holding window (page -> relay handoff)"""
        now = time.time() if now is None else now
        return replace(self, created_at=now, expires_at=now + ttl)

    def is_valid(self, now: float = None) -> bool:
        now = time.time() if now is None else now
        return now <= self.expires_at

    def __repr__(self):
        return (f"ConsoleSession(vmid={self.vmid}, node={self.node!r}, host={self.proxmox_host!r}, "
                f"port={self.port}, ticket={mask_secret(self.ticket)}, "
                f"cookie={mask_secret(self.auth_cookie)}, expires_at={self.expires_at:.3f})")


class ConsoleSessionRegistry:
    """Single-use, short-TTL slots keyed by SessionKey.

    One lock guards the whole map; there is one entry per console request in
    flight so contention is not a concern.
    """

    def __init__(self, name: str = 'console', ttl: float = CONSOLE_SESSION_TTL):
        self.name = name
        self.ttl = ttl
        self._entries: Dict[SessionKey, ConsoleSession] = {}
        self._lock = threading.Lock()

    def put(self, key: SessionKey, session: ConsoleSession):
        with self._lock:
            replaced = key in self._entries
            self._entries[key] = session
        if replaced:
            logging.debug(f"[CONSOLE] {self.name}: replaced unconsumed session for VM {key.vmid} on {key.node}")

    def take_if_valid(self, key: SessionKey, now: float = None) -> Optional[ConsoleSession]:
        """Remove and return the entry if it has not expired.

        Missing and expired look the same to the caller.
        """
        now = time.time() if now is None else now
        with self._lock:
            session = self._entries.pop(key, None)
        if session is None or not session.is_valid(now):
            return None
        return session

    def purge_expired(self, now: float = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            expired = [k for k, s in self._entries.items() if not s.is_valid(now)]
            for k in expired:
                del self._entries[k]
        if expired:
            logging.debug(f"[CONSOLE] {self.name}: purged {len(expired)} expired sessions")
        return len(expired)

    def discard_visitor(self, visitor_id: str) -> int:
        """Drop everything a visitor still has pending (logout)"""
        with self._lock:
            keys = [k for k in self._entries if k.visitor_id == visitor_id]
            for k in keys:
                del self._entries[k]
        return len(keys)

    def __len__(self):
        with self._lock:
            return len(self._entries)
