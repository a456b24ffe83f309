import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

DEFAULT_PORTS = {"http": "80", "https": "443"}
_REPEATED_SLASHES_RE = re.compile(r"/{2,}")


def normalize_offer_url(raw_url: str) -> str:
    """Canonical offer URL used for fingerprint matching.

    Query parameters are stable-sorted by key, so repeated keys keep their
    original relative order. Every parameter is kept.
    """
    parsed = urlsplit(raw_url.strip())

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    if not scheme or not netloc:
        raise ValueError(f"offer url must be absolute: {raw_url!r}")

    if ":" in netloc and not netloc.endswith("]"):
        host, port = netloc.rsplit(":", maxsplit=1)
        if DEFAULT_PORTS.get(scheme) == port:
            netloc = host

    path = _REPEATED_SLASHES_RE.sub("/", parsed.path) or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    query_pairs = parse_qsl(parsed.query, keep_blank_values=True)
    query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(query_pairs, doseq=True)

    return urlunsplit((scheme, netloc, path, query, ""))


def build_offer_fingerprint(product_id: str, retailer_id: str, url: str) -> str:
    return f"{product_id}::{retailer_id}::{normalize_offer_url(url)}"
