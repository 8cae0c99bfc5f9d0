"""Rewriting of internal placeholder URLs into absolute, client-facing URLs."""

import re
from typing import List, Optional, Sequence
from urllib.parse import quote

from fastapi import Request

PLACEHOLDER_SCHEME = "local://"
IPV4_HOST = re.compile(r"^(\d{1,3}\.){3}\d{1,3}(:\d+)?$")
# Left unescaped, as in JavaScript's encodeURIComponent
KEY_SAFE_CHARS = "!'()*"


def placeholder(path: str) -> str:
    return f"{PLACEHOLDER_SCHEME}{path}"


def _arriving_protocol(request: Request) -> str:
    return (
        request.headers.get("X-Forwarded-Proto")
        or request.headers.get("X-Forwarded-Protocol")
        or request.url.scheme
    )


def _arriving_host(request: Request) -> str:
    return request.headers.get("X-Forwarded-Host") or request.headers.get("host") or request.url.netloc


def _base_path(request: Request) -> str:
    prefix = request.headers.get("X-Forwarded-Path", "").strip("/")
    return f"/{prefix}/" if prefix else "/"


def key_query(request: Request) -> str:
    """``?key=...`` for the incoming request's ``key`` parameter, or ""."""
    key = request.query_params.get("key")
    if not key:
        return ""
    return f"?key={quote(key, safe=KEY_SAFE_CHARS)}"


def get_public_url(request: Request, public_url: Optional[str]) -> str:
    """Configured public URL, or the base URL the request arrived on."""
    if public_url:
        return public_url
    return f"{_arriving_protocol(request)}://{_arriving_host(request)}{_base_path(request)}"


def fix_url(
    request: Request, url: Optional[str], public_url: Optional[str], with_key: bool = True
) -> Optional[str]:
    """Replace the ``local://`` placeholder with the public base URL."""
    if not isinstance(url, str) or not url.startswith(PLACEHOLDER_SCHEME):
        return url
    resolved = get_public_url(request, public_url) + url[len(PLACEHOLDER_SCHEME):]
    if with_key:
        resolved += key_query(request)
    return resolved


def expand_domains(host: str, domains: Sequence[str]) -> List[str]:
    """
    Expand domain-sharding entries against the arriving host.

    Wildcard entries only expand when the host has more than one label and is
    not a raw IPv4 address; the ``*`` takes the host's first label. An entry
    with a single label (``*-a``) keeps the rest of the arriving host.
    """
    host_labels = host.split(".")
    relative_usable = len(host_labels) > 1 and not IPV4_HOST.match(host)

    expanded: List[str] = []
    for domain in domains:
        if "*" not in domain:
            expanded.append(domain)
            continue
        if not relative_usable:
            continue
        first, _, rest = domain.partition(".")
        first = first.replace("*", host_labels[0])
        if rest:
            expanded.append(f"{first}.{rest}")
        else:
            expanded.append(".".join([first] + host_labels[1:]))
    return expanded


def get_tile_urls(
    request: Request,
    domains: Sequence[str],
    path: str,
    tile_format: str,
    public_url: Optional[str],
    pbf_alias: Optional[str] = None,
) -> List[str]:
    """
    Tile URL templates for a logical path such as ``data/base``.

    A configured public URL wins and disables domain sharding.
    """
    query = key_query(request)
    if pbf_alias and tile_format == "pbf":
        tile_format = pbf_alias

    if public_url:
        return [f"{public_url}{path}/{{z}}/{{x}}/{{y}}.{tile_format}{query}"]

    host = _arriving_host(request)
    hosts = expand_domains(host, domains) or [host]
    protocol = _arriving_protocol(request)
    base = _base_path(request)
    return [
        f"{protocol}://{domain}{base}{path}/{{z}}/{{x}}/{{y}}.{tile_format}{query}"
        for domain in hosts
    ]
