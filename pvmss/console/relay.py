# -*- coding: utf-8 -*-
"""
Browser <-> Proxmox VNC websocket relay

The browser can't send PVEAuthCookie cross-origin, so it connects to us and we
dial Proxmox with the cookie. After that it's just copying messages, one
thread per direction, until either side goes away.

    UPGRADING -> DIALING_UPSTREAM -> RELAYING -> CLOSED(reason)

Threads become greenlets when the server runs under gevent monkey patching.
"""

import ssl
import time
import socket
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union
from urllib.parse import urlsplit

import websocket
from simple_websocket import ConnectionClosed

from pvmss.constants import (
    PROXMOX_COOKIE_NAME, RELAY_DIAL_TIMEOUT, RELAY_POLL_INTERVAL, RELAY_CLOSE_GRACE,
    RELAY_CLOSE_CODE_NORMAL, RELAY_CLOSE_CODE_ERROR,
)
from pvmss.core.proxmox import vnc_websocket_path
from pvmss.utils.sanitization import mask_secret

# str = text frame, bytes = binary frame
Message = Union[str, bytes]

UPSTREAM_UNAVAILABLE = 'Upstream console unavailable'


def _frame_size(message: Message) -> int:
    # bytes on the wire, text frames are utf-8
    if isinstance(message, str):
        return len(message.encode('utf-8'))
    return len(message)


class RelayState(Enum):
    UPGRADING = 'upgrading'
    DIALING_UPSTREAM = 'dialing_upstream'
    RELAYING = 'relaying'
    CLOSED = 'closed'


class EndpointClosed(Exception):
    """The other end closed (or the socket died) - ends the relay"""


def _shutdown_socket(sock):
    # shutdown() wakes up a thread blocked in recv(), close() alone does not
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


class BrowserSocket:
    """flask-sock / simple_websocket side"""
    name = 'browser'

    def __init__(self, ws):
        self.ws = ws
        self._send_lock = threading.Lock()

    def receive(self, timeout: Optional[float] = None) -> Optional[Message]:
        """next message, None when the timeout passed without one"""
        try:
            return self.ws.receive(timeout=timeout)
        except ConnectionClosed as e:
            raise EndpointClosed(f"browser closed ({e.reason})")

    def send(self, message: Message):
        with self._send_lock:
            try:
                self.ws.send(message)
            except ConnectionClosed as e:
                raise EndpointClosed(f"browser closed ({e.reason})")

    def close(self, code: int = RELAY_CLOSE_CODE_NORMAL, reason: str = ''):
        with self._send_lock:
            try:
                self.ws.close(reason=code, message=reason or None)
            except ConnectionClosed:
                pass

    def abort(self):
        _shutdown_socket(getattr(self.ws, 'sock', None))


class UpstreamSocket:
    """websocket-client side (Proxmox)"""
    name = 'upstream'

    def __init__(self, conn: websocket.WebSocket):
        self.conn = conn

    def receive(self, timeout: Optional[float] = None) -> Optional[Message]:
        # blocks until a data frame arrives; abort() unblocks it
        try:
            opcode, data = self.conn.recv_data()
        except (websocket.WebSocketException, OSError) as e:
            raise EndpointClosed(f"upstream closed ({e})")
        if opcode == websocket.ABNF.OPCODE_CLOSE:
            raise EndpointClosed('upstream sent close')
        if opcode == websocket.ABNF.OPCODE_TEXT:
            return data.decode('utf-8')
        return data

    def send(self, message: Message):
        opcode = websocket.ABNF.OPCODE_TEXT if isinstance(message, str) else websocket.ABNF.OPCODE_BINARY
        try:
            self.conn.send(message, opcode=opcode)
        except (websocket.WebSocketException, OSError) as e:
            raise EndpointClosed(f"upstream closed ({e})")

    def close(self, code: int = RELAY_CLOSE_CODE_NORMAL, reason: str = ''):
        # only send the close frame; the upstream pump reads the reply
        if not self.conn.connected:
            return
        try:
            self.conn.send_close(status=code, reason=reason.encode('utf-8'))
        except (websocket.WebSocketException, OSError) as e:
            logging.debug(f"[RELAY] upstream close frame not sent: {e}")

    def abort(self):
        _shutdown_socket(getattr(self.conn, 'sock', None))
        self.conn.shutdown()


@dataclass(frozen=True)
class UpstreamTarget:
    url: str
    auth_cookie: str
    verify_ssl: bool = True

    @classmethod
    def for_console(cls, base_url: str, node: str, vmid: int, port: int, ticket: str,
                    auth_cookie: str, verify_ssl: bool = True) -> 'UpstreamTarget':
        return cls(url=build_upstream_url(base_url, node, vmid, port, ticket),
                   auth_cookie=auth_cookie, verify_ssl=verify_ssl)

    def __repr__(self):
        return f"UpstreamTarget(url={self.url.split('?')[0]!r}, cookie={mask_secret(self.auth_cookie)})"


def build_upstream_url(base_url: str, node: str, vmid: int, port: int, ticket: str) -> str:
    """http(s)://pve:8006 -> ws(s)://pve:8006/api2/json/nodes/<node>/qemu/<vmid>/vncwebsocket?..."""
    parts = urlsplit(base_url)
    if parts.scheme == 'https':
        scheme = 'wss'
    elif parts.scheme == 'http':
        scheme = 'ws'
    else:
        raise ValueError(f"unsupported Proxmox URL scheme: {parts.scheme!r}")
    return f"{scheme}://{parts.netloc}/{vnc_websocket_path(node, vmid, port, ticket)}"


def dial_upstream(target: UpstreamTarget, timeout: float = RELAY_DIAL_TIMEOUT,
                  connect=websocket.create_connection) -> UpstreamSocket:
    """open the Proxmox websocket; the ticket alone is not enough, the cookie is required"""
    sslopt = {}
    if not target.verify_ssl:
        sslopt = {'cert_reqs': ssl.CERT_NONE, 'check_hostname': False}

    conn = connect(
        target.url,
        header=[f"Cookie: {PROXMOX_COOKIE_NAME}={target.auth_cookie}"],
        sslopt=sslopt,
        timeout=timeout,
        enable_multithread=True,
    )
    # dial timeout only; reads block until data or abort()
    conn.settimeout(None)
    return UpstreamSocket(conn)


class ConsoleRelay:
    """One console viewing: browser socket + upstream socket + two pumps"""

    def __init__(self, browser, label: str = '', poll_interval: float = RELAY_POLL_INTERVAL,
                 close_grace: float = RELAY_CLOSE_GRACE):
        self.browser = browser
        self.upstream = None
        self.label = label
        self.poll_interval = poll_interval
        self.close_grace = close_grace
        self.state = RelayState.UPGRADING
        self.close_reason: Optional[str] = None
        self.bytes_up = 0
        self.bytes_down = 0
        self._stop = threading.Event()
        self._reason_lock = threading.Lock()

    def _set_reason(self, reason: str):
        with self._reason_lock:
            if self.close_reason is None:
                self.close_reason = reason

    def cancel(self, reason: str = 'cancelled'):
        """stop from outside (server shutdown); run() tears down"""
        self._set_reason(reason)
        self._stop.set()

    def serve(self, dialer: Callable[[], object]):
        """dial upstream and relay until done. Returns when both sides are closed."""
        self.state = RelayState.DIALING_UPSTREAM
        try:
            self.upstream = dialer()
        except Exception as e:
            # no retry: the ticket is single use, the browser asks for a new one
            logging.warning(f"[RELAY] {self.label}: upstream dial failed: {type(e).__name__}: {e}")
            self._set_reason('upstream dial failed')
            self.browser.close(RELAY_CLOSE_CODE_ERROR, UPSTREAM_UNAVAILABLE)
            self.state = RelayState.CLOSED
            return

        logging.info(f"[RELAY] {self.label}: connected to upstream, relaying")
        self.run()

    def run(self):
        self.state = RelayState.RELAYING
        pumps = [
            threading.Thread(target=self._pump, args=(self.browser, self.upstream, 'browser->upstream'),
                             name=f"relay-up-{self.label}", daemon=True),
            threading.Thread(target=self._pump, args=(self.upstream, self.browser, 'upstream->browser'),
                             name=f"relay-down-{self.label}", daemon=True),
        ]
        for pump in pumps:
            pump.start()

        self._stop.wait()
        self._teardown(pumps)

    def _pump(self, source, sink, direction: str):
        try:
            while not self._stop.is_set():
                message = source.receive(timeout=self.poll_interval)
                if message is None:
                    continue
                if self._stop.is_set():
                    break
                sink.send(message)
                if direction == 'browser->upstream':
                    self.bytes_up += _frame_size(message)
                else:
                    self.bytes_down += _frame_size(message)
        except EndpointClosed as e:
            self._set_reason(str(e))
        except Exception as e:
            logging.warning(f"[RELAY] {self.label}: {direction} error: {type(e).__name__}: {e}")
            self._set_reason(f"{direction} error")
        finally:
            self._stop.set()

    def _join(self, pumps):
        deadline = time.monotonic() + self.close_grace
        for pump in pumps:
            pump.join(max(0.0, deadline - time.monotonic()))

    def _teardown(self, pumps):
        for endpoint in (self.browser, self.upstream):
            try:
                endpoint.close(RELAY_CLOSE_CODE_NORMAL, '')
            except Exception as e:
                logging.debug(f"[RELAY] {self.label}: close of {endpoint.name} failed: {e}")

        self._join(pumps)

        if any(p.is_alive() for p in pumps):
            for endpoint in (self.browser, self.upstream):
                try:
                    endpoint.abort()
                except Exception as e:
                    logging.debug(f"[RELAY] {self.label}: abort of {endpoint.name} failed: {e}")
            self._join(pumps)
            if any(p.is_alive() for p in pumps):
                logging.warning(f"[RELAY] {self.label}: pump thread still alive after abort")

        self.state = RelayState.CLOSED
        logging.info(f"[RELAY] {self.label}: closed ({self.close_reason}), "
                     f"sent {self.bytes_up} bytes, received {self.bytes_down} bytes")


class ActiveRelays:
    """running relays, so shutdown can stop them"""

    def __init__(self):
        self._relays = set()
        self._lock = threading.Lock()

    @contextmanager
    def track(self, relay: ConsoleRelay):
        with self._lock:
            self._relays.add(relay)
        try:
            yield relay
        finally:
            with self._lock:
                self._relays.discard(relay)

    def stop_all(self, reason: str = 'server shutdown') -> int:
        with self._lock:
            relays = list(self._relays)
        for relay in relays:
            relay.cancel(reason)
        if relays:
            logging.info(f"[RELAY] Stopping {len(relays)} active console relays")
        return len(relays)

    def __len__(self):
        with self._lock:
            return len(self._relays)
