from dataclasses import dataclass
from urllib.parse import parse_qs, urlsplit


@dataclass(frozen=True)
class PageLocation:
    """The location the terminal is served from, split into its parts."""
    scheme: str   # "https:" or "http:", with the trailing colon
    host: str     # hostname with optional ":port"
    path: str
    query: str    # "" or "?..." including the question mark

    @classmethod
    def from_url(cls, url: str) -> "PageLocation":
        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"not an absolute URL: {url!r}")
        return cls(
            scheme=f"{parts.scheme}:",
            host=parts.netloc,
            path=parts.path,
            query=f"?{parts.query}" if parts.query else "",
        )


@dataclass(frozen=True)
class Endpoints:
    ws_url: str
    token_url: str


def resolve_endpoints(location: PageLocation) -> Endpoints:
    """
    Derive the WebSocket and token URLs from the page location.

    The WebSocket URL upgrades to ``wss:`` on secure pages and keeps the page
    query string. A ``fwdPort`` query parameter replaces the port of the
    WebSocket host, for proxies that serve the page on one port and the
    session traffic on another; a host without a port is left as it is.
    The token URL always uses the page's own scheme and host, without the
    query string.
    """
    protocol = "wss:" if location.scheme == "https:" else "ws:"
    path = location.path.rstrip("/")

    host = location.host
    fwd_port = parse_qs(location.query.lstrip("?")).get("fwdPort")
    if fwd_port and fwd_port[0] and ":" in host:
        host = f"{host.split(':', 1)[0]}:{fwd_port[0]}"

    ws_url = "".join([protocol, "//", host, path, "/ws", location.query])
    token_url = "".join([location.scheme, "//", location.host, path, "/token"])
    return Endpoints(ws_url=ws_url, token_url=token_url)
