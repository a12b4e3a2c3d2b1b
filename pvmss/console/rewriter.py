# -*- coding: utf-8 -*-
"""
noVNC bootstrap rewriter

Proxmox serves its own noVNC page which points at the Proxmox origin for the
websocket and for every asset. We patch that markup textually so the browser
only ever talks to the portal. This is tied to the noVNC layout Proxmox ships
(checked against noVNC 1.6.0 / PVE 8.x) - if Proxmox changes the page these
rules need another look, tests/fixtures has the markup they were written for.
"""

import re
import json
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlencode, urlsplit

from pvmss.constants import NOVNC_ASSET_ROOT

HOP_BY_HOP_HEADERS = frozenset((
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailer', 'trailers', 'transfer-encoding', 'upgrade',
))
# recomputed by us: requests already decoded the body and we change its length
_DROPPED_HEADERS = HOP_BY_HOP_HEADERS | {'content-length', 'content-encoding', 'content-type'}

# stop characters for a URL embedded in HTML or JS
_URL_CHARS = r'''[^\s'"`<>()]'''

_API_WEBSOCKET_RE = re.compile(
    r'(?:wss?|https?)://[^\s\'"`<>/]+/api2/json/' + _URL_CHARS + r'*?vncwebsocket' + _URL_CHARS + r'*'
)
_QUOTED_API_WEBSOCKET_RE = re.compile(
    r'''(?<=['"`])/api2/json/''' + _URL_CHARS + r'*?vncwebsocket' + _URL_CHARS + r'*'
)
_ABSOLUTE_WEBSOCKIFY_RE = re.compile(r'wss?://[^\s\'"`<>/]+/websockify' + _URL_CHARS + r'*')
_BARE_WEBSOCKIFY_RE = re.compile(r'/websockify(?:\?' + _URL_CHARS + r'*)?')

# asset prefixes, in the order they are applied
_NOVNC_PREFIX_RE = re.compile(r'(?<![\w.])/novnc/')
_VM_PREFIX_RE = re.compile(r'(?<![\w.])/vm/(app|core|vendor)/')
_QUOTED_APP_RE = re.compile(r'''(['"])(?:\./)?app/''')
_PACKAGE_JSON_RE = re.compile(r'''(['"])(?:\./|/)?package\.json''')
_BASE_URL_RE = re.compile(r'''(baseURL\s*=\s*)(['"])\./\2''')

_HEAD_CLOSE_RE = re.compile(r'</head\s*>', re.IGNORECASE)

# stand-ins for the relay URL until the host and asset rules have run
_RELAY_URL_MARK = '\x00pvmss-relay-url\x00'
_RELAY_PATH_MARK = '\x00pvmss-relay-path\x00'

_RUNTIME_SCRIPT = """<script>
(function () {
  "use strict";
  var cfg = %(config)s;
  function relaySocketUrl() {
    if (/^wss?:\\/\\//.test(cfg.relayUrl)) { return cfg.relayUrl; }
    var scheme = window.location.protocol === "https:" ? "wss://" : "ws://";
    return scheme + window.location.host + cfg.relayUrl;
  }
  function localPath(url) {
    var m = /^(?:https?|wss?):\\/\\/([^\\/]+)(\\/.*)?$/.exec(url);
    if (m && m[1] !== window.location.host) { return m[2] || "/"; }
    return url;
  }
  function rewriteAsset(url) {
    var path = localPath(url);
    if (path.indexOf("/novnc/") === 0) { return cfg.assetRoot + path.slice(7); }
    var vm = /^\\/vm\\/(app|core|vendor)\\//.exec(path);
    if (vm) { return cfg.assetRoot + path.slice(4); }
    return path;
  }
  if (window.fetch) {
    var origFetch = window.fetch;
    window.fetch = function (input, init) {
      if (typeof input === "string") { input = rewriteAsset(input); }
      else if (input && input.url && typeof Request !== "undefined" && input instanceof Request) {
        var target = rewriteAsset(input.url);
        if (target !== input.url) { input = new Request(target, input); }
      }
      return origFetch.call(this, input, init);
    };
  }
  var OrigWebSocket = window.WebSocket;
  // this page only ever opens the VNC socket: whatever URL noVNC built, it goes to the relay
  var PatchedWebSocket = function (url, protocols) {
    var target = relaySocketUrl();
    return protocols === undefined ? new OrigWebSocket(target) : new OrigWebSocket(target, protocols);
  };
  PatchedWebSocket.prototype = OrigWebSocket.prototype;
  PatchedWebSocket.CONNECTING = OrigWebSocket.CONNECTING;
  PatchedWebSocket.OPEN = OrigWebSocket.OPEN;
  PatchedWebSocket.CLOSING = OrigWebSocket.CLOSING;
  PatchedWebSocket.CLOSED = OrigWebSocket.CLOSED;
  window.WebSocket = PatchedWebSocket;
})();
</script>
"""


@dataclass(frozen=True)
class RelayTarget:
    """What the rewritten page should connect its websocket to"""
    vmid: int
    node: str
    port: int
    ticket: str

    def query(self) -> str:
        return urlencode({'vmid': self.vmid, 'node': self.node, 'port': self.port,
                          'vncticket': self.ticket})


@dataclass
class RewrittenPage:
    body: bytes
    headers: List[Tuple[str, str]]


def filter_upstream_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """upstream headers minus the ones we recompute / hop-by-hop"""
    return [(k, v) for k, v in headers if k.lower() not in _DROPPED_HEADERS]


def rewrite_asset_paths(text: str, root: str = NOVNC_ASSET_ROOT) -> str:
    """noVNC asset references (/novnc/, /vm/, quoted app/, package.json) -> root"""
    text = _NOVNC_PREFIX_RE.sub(root, text)
    text = _VM_PREFIX_RE.sub(lambda m: f"{root}{m.group(1)}/", text)
    text = _QUOTED_APP_RE.sub(lambda m: f"{m.group(1)}{root}app/", text)
    text = _PACKAGE_JSON_RE.sub(lambda m: f"{m.group(1)}{root}package.json", text)
    text = _BASE_URL_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{root}{m.group(2)}", text)
    return text


def _json_for_script(value) -> str:
    # </script> inside the JSON would end our script element
    return json.dumps(value).replace('</', '<\\/')


class ConsoleMarkupRewriter:
    """Rewrites Proxmox's noVNC page to go through the portal.

    proxmox_base_url: the configured Proxmox URL (https://pve:8006)
    relay_path: portal websocket route, e.g. /console/websocket
    asset_root: where the vendored noVNC lives, e.g. /static/novnc/
    portal_host: host[:port] the browser used to reach us; when given, the
        websocket URL is written absolute (ws/wss by portal_secure)
    """

    def __init__(self, proxmox_base_url: str, relay_path: str, asset_root: str = NOVNC_ASSET_ROOT,
                 portal_host: Optional[str] = None, portal_secure: bool = True):
        parts = urlsplit(proxmox_base_url)
        self.proxmox_netloc = parts.netloc
        self.proxmox_hostname = parts.hostname or ''
        self.relay_path = relay_path
        self.asset_root = asset_root if asset_root.endswith('/') else asset_root + '/'
        self.portal_host = portal_host
        self.portal_secure = portal_secure

        host_alternatives = [re.escape(self.proxmox_netloc)]
        if self.proxmox_hostname and self.proxmox_hostname != self.proxmox_netloc:
            host_alternatives.append(re.escape(self.proxmox_hostname) + r'(?::\d+)?')
        hosts = '|'.join(host_alternatives)
        self._origin_re = re.compile(r'(?:https?|wss?)://(?:' + hosts + r')(?![\w.-])')
        self._bare_host_re = re.compile(r'(?<![\w.-])(?:' + hosts + r')(?![\w.-])')

    def relay_url(self, target: RelayTarget) -> str:
        path = f"{self.relay_path}?{target.query()}"
        if self.portal_host:
            scheme = 'wss' if self.portal_secure else 'ws'
            return f"{scheme}://{self.portal_host}{path}"
        return path

    def rewrite_markup(self, html: str, target: RelayTarget) -> str:
        relay_url = self.relay_url(target)
        relay_path = f"{self.relay_path}?{target.query()}"

        # 1. websocket endpoint of the Proxmox API
        html = _API_WEBSOCKET_RE.sub(_RELAY_URL_MARK, html)
        html = _QUOTED_API_WEBSOCKET_RE.sub(_RELAY_PATH_MARK, html)

        # 2. legacy websockify path
        html = _ABSOLUTE_WEBSOCKIFY_RE.sub(_RELAY_URL_MARK, html)
        html = _BARE_WEBSOCKIFY_RE.sub(_RELAY_PATH_MARK, html)

        # 3. leftover Proxmox origins -> root relative, bare host mentions -> portal host
        html = self._origin_re.sub('', html)
        html = self._bare_host_re.sub(self.portal_host or '', html)

        # 4. assets
        html = self.rewrite_assets(html)

        # relay URLs go in after 3 and 4, their query may name the Proxmox host as node
        html = html.replace(_RELAY_URL_MARK, relay_url).replace(_RELAY_PATH_MARK, relay_path)

        # 5. runtime safety net
        return self.inject_runtime_script(html, relay_url)

    def rewrite_assets(self, text: str) -> str:
        return rewrite_asset_paths(text, self.asset_root)

    def inject_runtime_script(self, html: str, relay_url: str) -> str:
        config = _json_for_script({'relayUrl': relay_url, 'assetRoot': self.asset_root})
        script = _RUNTIME_SCRIPT % {'config': config}
        match = _HEAD_CLOSE_RE.search(html)
        if match is None:
            return script + html
        return html[:match.start()] + script + html[match.start():]

    def render(self, body: bytes, upstream_headers: Iterable[Tuple[str, str]],
               target: RelayTarget, encoding: str = 'utf-8') -> RewrittenPage:
        html = body.decode(encoding or 'utf-8', errors='replace')
        out = self.rewrite_markup(html, target).encode('utf-8')

        headers = filter_upstream_headers(upstream_headers)
        headers.append(('Content-Type', 'text/html; charset=utf-8'))
        headers.append(('Content-Length', str(len(out))))
        return RewrittenPage(body=out, headers=headers)
