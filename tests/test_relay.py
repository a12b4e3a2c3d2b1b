# -*- coding: utf-8 -*-
import random
import ssl
import threading
import time

import pytest
import websocket
from simple_websocket import ConnectionClosed

from pvmss.console.relay import (
    BrowserSocket, ConsoleRelay, EndpointClosed, RelayState, UpstreamSocket, UpstreamTarget,
    ActiveRelays, build_upstream_url, dial_upstream, UPSTREAM_UNAVAILABLE,
)

from conftest import MemoryEndpoint, VNC_TICKET, _CLOSE


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def start_relay(browser, upstream, **kwargs):
    kwargs.setdefault('poll_interval', 0.05)
    relay = ConsoleRelay(browser, label='100@pve1', **kwargs)
    thread = threading.Thread(target=relay.serve, args=(lambda: upstream,), daemon=True)
    thread.start()
    return relay, thread


def random_frames(rng, count):
    frames = []
    for _ in range(count):
        size = rng.randint(0, 2048)
        if rng.random() < 0.2:
            frames.append(''.join(rng.choice('abcdefxyz0123') for _ in range(size)))
        else:
            frames.append(rng.getrandbits(8 * size).to_bytes(size, 'little') if size else b'')
    return frames


@pytest.mark.parametrize('seed', [7, 1234, 20261018])
def test_frames_arrive_in_order_both_directions(seed):
    rng = random.Random(seed)
    down = random_frames(rng, rng.randint(1, 1000))
    up = random_frames(rng, rng.randint(1, 1000))
    browser, upstream = MemoryEndpoint('browser'), MemoryEndpoint('upstream')

    relay, thread = start_relay(browser, upstream)
    for frame in down:
        upstream.feed(frame)
    for frame in up:
        browser.feed(frame)

    assert wait_for(lambda: len(browser.sent) == len(down) and len(upstream.sent) == len(up))
    relay.cancel('test done')
    thread.join(2)

    assert browser.sent == down
    assert upstream.sent == up
    # text stays text, binary stays binary
    assert [type(f) for f in browser.sent] == [type(f) for f in down]
    assert relay.bytes_down == sum(len(f) for f in down)
    assert relay.bytes_up == sum(len(f) for f in up)


def test_text_frames_counted_in_utf8_bytes():
    browser, upstream = MemoryEndpoint('browser'), MemoryEndpoint('upstream')
    relay, thread = start_relay(browser, upstream)
    upstream.feed('héllo')
    browser.feed('€')
    browser.feed(b'\x00\x01')

    assert wait_for(lambda: len(browser.sent) == 1 and len(upstream.sent) == 2)
    relay.cancel('test done')
    thread.join(2)

    assert relay.bytes_down == 6
    assert relay.bytes_up == 5


def test_upstream_close_delivers_everything_then_closes_browser():
    browser, upstream = MemoryEndpoint('browser'), MemoryEndpoint('upstream')
    for frame in (b'RFB 003.008\n', b'\x01\x02', 'text'):
        upstream.feed(frame)
    upstream.hang_up()

    relay, thread = start_relay(browser, upstream)
    thread.join(3)

    assert not thread.is_alive()
    assert browser.sent == [b'RFB 003.008\n', b'\x01\x02', 'text']
    assert browser.closed_with == (1000, '')
    assert relay.state == RelayState.CLOSED


def test_browser_close_closes_upstream():
    browser, upstream = MemoryEndpoint('browser'), MemoryEndpoint('upstream')
    relay, thread = start_relay(browser, upstream)

    assert wait_for(lambda: relay.state == RelayState.RELAYING)
    browser.hang_up()
    thread.join(3)

    assert not thread.is_alive()
    assert upstream.closed_with == (1000, '')
    assert 'browser' in relay.close_reason


def test_cancel_tears_down_within_a_second():
    browser, upstream = MemoryEndpoint('browser'), MemoryEndpoint('upstream')
    relay, thread = start_relay(browser, upstream)
    assert wait_for(lambda: relay.state == RelayState.RELAYING)

    started = time.monotonic()
    relay.cancel('server shutdown')
    thread.join(1.0)
    elapsed = time.monotonic() - started

    assert not thread.is_alive()
    assert elapsed < 1.0
    assert browser.closed and upstream.closed
    assert relay.close_reason == 'server shutdown'


def test_stuck_pump_is_aborted():
    class StuckUpstream(MemoryEndpoint):
        # ignores the poll timeout and close(); only abort() unblocks receive()
        def __init__(self, name):
            super().__init__(name)
            self.entered = threading.Event()

        def receive(self, timeout=None):
            self.entered.set()
            item = self.inbox.get()
            if item is _CLOSE:
                raise EndpointClosed('upstream aborted')
            return item

        def close(self, code=1000, reason=''):
            self.closed_with = (code, reason)

        def abort(self):
            self.aborted = True
            self.inbox.put(_CLOSE)

    browser, upstream = MemoryEndpoint('browser'), StuckUpstream('upstream')
    relay, thread = start_relay(browser, upstream, close_grace=0.2)
    # the pump has to be blocked in receive() before we cancel
    assert upstream.entered.wait(5)

    relay.cancel()
    thread.join(2)

    assert not thread.is_alive()
    assert upstream.aborted


def test_dial_failure_closes_browser_with_1011_before_any_data():
    browser = MemoryEndpoint('browser')
    relay = ConsoleRelay(browser, label='100@pve1')

    def failing_dialer():
        raise ConnectionRefusedError('connection refused')

    relay.serve(failing_dialer)

    assert browser.closed_with == (1011, UPSTREAM_UNAVAILABLE)
    assert browser.sent == []
    assert relay.state == RelayState.CLOSED
    assert relay.close_reason == 'upstream dial failed'


def test_active_relays_tracks_and_stops():
    relays = ActiveRelays()
    browser, upstream = MemoryEndpoint('browser'), MemoryEndpoint('upstream')
    relay = ConsoleRelay(browser, label='100@pve1', poll_interval=0.05)

    def run():
        with relays.track(relay):
            relay.serve(lambda: upstream)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    assert wait_for(lambda: len(relays) == 1 and relay.state == RelayState.RELAYING)

    assert relays.stop_all() == 1
    thread.join(2)
    assert len(relays) == 0


# -- endpoint adapters ------------------------------------------------------

class FakeServerWs:
    def __init__(self, incoming=(), closed=False):
        self.incoming = list(incoming)
        self.sent = []
        self.closed = closed
        self.close_args = None

    def receive(self, timeout=None):
        if self.closed:
            raise ConnectionClosed(1000, 'bye')
        return self.incoming.pop(0) if self.incoming else None

    def send(self, data):
        if self.closed:
            raise ConnectionClosed(1000, 'bye')
        self.sent.append(data)

    def close(self, reason=None, message=None):
        self.close_args = (reason, message)
        self.closed = True


def test_browser_socket_maps_connection_closed():
    ws = FakeServerWs(incoming=[b'\x00'])
    browser = BrowserSocket(ws)

    assert browser.receive(timeout=0.1) == b'\x00'
    assert browser.receive(timeout=0.1) is None
    browser.close(1011, UPSTREAM_UNAVAILABLE)
    assert ws.close_args == (1011, UPSTREAM_UNAVAILABLE)

    with pytest.raises(EndpointClosed):
        browser.receive(timeout=0.1)
    with pytest.raises(EndpointClosed):
        browser.send(b'x')


class FakeClientConn:
    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent = []
        self.connected = True
        self.timeout = 'unset'
        self.sock = None
        self.close_frames = []

    def recv_data(self):
        return self.frames.pop(0)

    def send(self, payload, opcode):
        self.sent.append((opcode, payload))

    def send_close(self, status, reason):
        self.close_frames.append((status, reason))

    def settimeout(self, timeout):
        self.timeout = timeout

    def shutdown(self):
        self.connected = False


def test_upstream_socket_keeps_frame_types():
    conn = FakeClientConn(frames=[
        (websocket.ABNF.OPCODE_BINARY, b'\x00\x01'),
        (websocket.ABNF.OPCODE_TEXT, 'hello'.encode('utf-8')),
        (websocket.ABNF.OPCODE_CLOSE, b'\x03\xe8'),
    ])
    upstream = UpstreamSocket(conn)

    assert upstream.receive() == b'\x00\x01'
    assert upstream.receive() == 'hello'
    with pytest.raises(EndpointClosed):
        upstream.receive()

    upstream.send('text')
    upstream.send(b'\xff')
    assert conn.sent == [(websocket.ABNF.OPCODE_TEXT, 'text'), (websocket.ABNF.OPCODE_BINARY, b'\xff')]

    upstream.close(1000, '')
    assert conn.close_frames == [(1000, b'')]


def test_build_upstream_url():
    url = build_upstream_url('https://pve.example.internal:8006', 'pve1', 100, 5901, VNC_TICKET)
    assert url.startswith('wss://pve.example.internal:8006/api2/json/nodes/pve1/qemu/100/vncwebsocket?')
    assert 'port=5901' in url
    assert 'vncticket=PVEVNC%3A' in url

    assert build_upstream_url('http://10.0.0.5:8006', 'pve1', 100, 5901, 'T').startswith('ws://10.0.0.5:8006/')
    with pytest.raises(ValueError):
        build_upstream_url('ftp://pve', 'pve1', 100, 5901, 'T')


def test_dial_upstream_sends_cookie_and_clears_timeout():
    captured = {}
    conn = FakeClientConn()

    def connect(url, **kwargs):
        captured['url'] = url
        captured.update(kwargs)
        return conn

    target = UpstreamTarget.for_console('https://pve.example.internal:8006', 'pve1', 100, 5901,
                                        VNC_TICKET, 'PVE:alice@pve:COOKIE0123456789', verify_ssl=False)
    upstream = dial_upstream(target, timeout=3, connect=connect)

    assert isinstance(upstream, UpstreamSocket)
    assert captured['header'] == ['Cookie: PVEAuthCookie=PVE:alice@pve:COOKIE0123456789']
    assert captured['sslopt'] == {'cert_reqs': ssl.CERT_NONE, 'check_hostname': False}
    assert captured['timeout'] == 3
    assert conn.timeout is None
    assert 'COOKIE0123456789' not in repr(target)
