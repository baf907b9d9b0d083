from __future__ import annotations

import re
from urllib.parse import urlsplit

CURL_ANNOTATION = "x-k8s.io/curl-me-that"

# ConfigMap data keys: alphanumerics, '-', '_' or '.', at most 253 characters,
# and never '.', '..' or a name starting with '..'.
_CONFIG_MAP_KEY = re.compile(r"^[-._a-zA-Z0-9]+$")
_MAX_KEY_LENGTH = 253
_ENTRY_SEPARATOR = re.compile(r"[,\s]+")
_ALLOWED_SCHEMES = {"http", "https"}


class ParseError(ValueError):
    """Raised when an annotation value does not follow the ``key=URL`` grammar."""


def _parse_key(entry: str, raw_key: str) -> str:
    key = raw_key.strip()
    if not key:
        raise ParseError(f"Missing key in directive {entry!r}")
    if len(key) > _MAX_KEY_LENGTH:
        raise ParseError(f"Key {key[:32]!r}... exceeds {_MAX_KEY_LENGTH} characters")
    if not _CONFIG_MAP_KEY.match(key) or key == "." or key.startswith(".."):
        raise ParseError(f"Key {key!r} is not a valid ConfigMap data key")
    return key


def _parse_url(entry: str, raw_url: str) -> str:
    url = raw_url.strip()
    if not url:
        raise ParseError(f"Missing URL in directive {entry!r}")
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise ParseError(f"Cannot parse URL {url!r}: {exc}") from exc
    if parts.scheme.lower() not in _ALLOWED_SCHEMES:
        raise ParseError(f"URL {url!r} must use http or https")
    if not parts.hostname:
        raise ParseError(f"URL {url!r} has no host")
    return url


def parse_directives(value: str) -> dict[str, str]:
    """Parse an annotation value into an ordered ``{key: url}`` mapping.

    Entries are ``key=URL`` pairs separated by commas or whitespace, so both
    ``a=http://x/1,b=http://x/2`` and a YAML block scalar with one entry per
    line are accepted.  Only the first ``=`` splits an entry; the rest belongs
    to the URL.

    A single malformed entry rejects the whole value with :class:`ParseError`.
    When a key is repeated the later URL wins.
    """
    directives: dict[str, str] = {}
    for entry in _ENTRY_SEPARATOR.split(value):
        if not entry:
            continue
        raw_key, separator, raw_url = entry.partition("=")
        if not separator:
            raise ParseError(f"Directive {entry!r} is not of the form key=URL")
        key = _parse_key(entry, raw_key)
        directives[key] = _parse_url(entry, raw_url)

    if not directives:
        raise ParseError("Annotation does not contain any key=URL directive")
    return directives
