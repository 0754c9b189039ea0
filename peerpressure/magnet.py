"""Magnet URI parsing and formatting, including updateable (public key) links."""

from __future__ import annotations

import hashlib
import re
import urllib.parse
from collections.abc import Iterable
from dataclasses import dataclass, field

_PREFIX = "magnet:?"
_BTIH = "urn:btih:"
_BTPK = "urn:btpk:"
_BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_HEX_RE = re.compile(r"(?:[0-9a-fA-F]{2})*")
_BAD_ESCAPE_RE = re.compile(r"%(?![0-9a-fA-F]{2})")
_INT_RE = re.compile(r"[+-]?[0-9]+")


class MagnetError(ValueError):
    """Raised for malformed magnet URIs."""


def _unescape(text: str) -> str:
    bad = _BAD_ESCAPE_RE.search(text)
    if bad:
        raise MagnetError(
            f"parse magnet params: invalid URL escape {text[bad.start():bad.start() + 3]!r}"
        )
    return urllib.parse.unquote_plus(text, errors="surrogateescape")


def _escape(text: str) -> str:
    return urllib.parse.quote_plus(text, safe="", errors="surrogateescape")


def _parse_query(query: str) -> dict[str, list[str]]:
    params: dict[str, list[str]] = {}
    for pair in query.split("&"):
        if not pair:
            continue
        if ";" in pair:
            raise MagnetError("parse magnet params: invalid semicolon separator in query")
        key, _, value = pair.partition("=")
        params.setdefault(_unescape(key), []).append(_unescape(value))
    return params


def _encode_query(params: dict[str, list[str]]) -> str:
    return "&".join(
        f"{_escape(key)}={_escape(value)}"
        for key in sorted(params)
        for value in params[key]
    )


def _query_of(uri: str) -> dict[str, list[str]]:
    if not uri.startswith(_PREFIX):
        raise MagnetError(f"not a magnet URI: {uri!r}")
    return _parse_query(uri[len(_PREFIX) :])


def _first(params: dict[str, list[str]], key: str) -> str:
    return params.get(key, [""])[0]


def _decode_hex(text: str, what: str) -> bytes:
    if not _HEX_RE.fullmatch(text):
        raise MagnetError(f"decode {what}: invalid hex {text!r}")
    return bytes.fromhex(text)


def _atoi(text: str, what: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise MagnetError(f"invalid {what} {text!r}")
    return int(text)


def decode_base32(text: str) -> bytes:
    """Decode unpadded RFC 4648 base32, case-insensitively."""
    bits = 0
    acc = 0
    out = bytearray()
    for char in text.upper():
        idx = _BASE32_ALPHABET.find(char)
        if idx < 0:
            raise MagnetError(f"invalid base32 character: {char}")
        acc = (acc << 5) | idx
        bits += 5
        if bits >= 8:
            bits -= 8
            out.append(acc >> bits)
            acc &= (1 << bits) - 1
    return bytes(out)


def parse_select_only(text: str) -> list[int]:
    """Parse a select-only list such as ``"0,2,4,6-8"`` into file indices."""
    indices: list[int] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        lo_text, dash, hi_text = part.partition("-")
        if dash:
            lo = _atoi(lo_text, "range start")
            hi = _atoi(hi_text, "range end")
            if lo > hi:
                raise MagnetError(f"invalid range {lo}-{hi}: start > end")
            indices.extend(range(lo, hi + 1))
        else:
            indices.append(_atoi(part, "index"))
    return indices


def format_select_only(indices: Iterable[int] | None) -> str:
    """Format file indices, collapsing consecutive runs into ranges."""
    runs: list[list[int]] = []
    for value in sorted(indices or ()):
        if runs and value == runs[-1][1] + 1:
            runs[-1][1] = value
        else:
            runs.append([value, value])
    return ",".join(
        str(start) if start == end else f"{start}-{end}" for start, end in runs
    )


@dataclass
class Link:
    """A magnet link identifying a torrent by its info hash."""

    info_hash: bytes = bytes(20)
    name: str = ""
    trackers: list[str] = field(default_factory=list)
    select_only: list[int] = field(default_factory=list)

    def __str__(self) -> str:
        params = {"xt": [_BTIH + bytes(self.info_hash).hex()]}
        if self.name:
            params["dn"] = [self.name]
        if self.trackers:
            params["tr"] = list(self.trackers)
        if self.select_only:
            params["so"] = [format_select_only(self.select_only)]
        return _PREFIX + _encode_query(params)


@dataclass
class UpdateableLink:
    """A magnet link for an updateable torrent, identified by a public key."""

    public_key: bytes = bytes(32)
    salt: str = ""
    name: str = ""

    def target_id(self) -> bytes:
        """Return the DHT target: SHA-1 of the public key followed by the salt."""
        salt = self.salt.encode("utf-8", "surrogateescape")
        return hashlib.sha1(bytes(self.public_key) + salt).digest()

    def __str__(self) -> str:
        params = {"xs": [_BTPK + bytes(self.public_key).hex()]}
        if self.salt:
            params["s"] = [self.salt.encode("utf-8", "surrogateescape").hex()]
        if self.name:
            params["dn"] = [self.name]
        return _PREFIX + _encode_query(params)


def parse(uri: str) -> Link:
    """Parse a ``magnet:?xt=urn:btih:...`` URI."""
    params = _query_of(uri)

    xt = _first(params, "xt")
    if not xt:
        raise MagnetError("magnet URI missing xt parameter")
    if not xt.startswith(_BTIH):
        raise MagnetError(f"unsupported xt scheme: {xt!r}")

    hash_text = xt[len(_BTIH) :]
    if len(hash_text) == 40:
        info_hash = _decode_hex(hash_text, "hex info_hash")
    elif len(hash_text) == 32:
        try:
            info_hash = decode_base32(hash_text)
        except MagnetError as exc:
            raise MagnetError(f"decode base32 info_hash: {exc}") from exc
    else:
        raise MagnetError(
            f"info_hash has unexpected length {len(hash_text)} (want 40 hex or 32 base32)"
        )

    link = Link(
        info_hash=info_hash,
        name=_first(params, "dn"),
        trackers=list(params.get("tr", [])),
    )

    select_only = _first(params, "so")
    if select_only:
        try:
            link.select_only = parse_select_only(select_only)
        except MagnetError as exc:
            raise MagnetError(f"parse so parameter: {exc}") from exc
    return link


def parse_updateable(uri: str) -> UpdateableLink:
    """Parse a ``magnet:?xs=urn:btpk:...`` URI."""
    params = _query_of(uri)

    xs = _first(params, "xs")
    if not xs:
        raise MagnetError("magnet URI missing xs parameter")
    if not xs.startswith(_BTPK):
        raise MagnetError(f"unsupported xs scheme: {xs!r} (want urn:btpk:)")

    key_hex = xs[len(_BTPK) :]
    if len(key_hex) != 64:
        raise MagnetError(
            f"public key has unexpected length {len(key_hex)} (want 64 hex chars)"
        )

    link = UpdateableLink(
        public_key=_decode_hex(key_hex, "public key"), name=_first(params, "dn")
    )

    salt = _first(params, "s")
    if salt:
        link.salt = _decode_hex(salt, "salt").decode("utf-8", "surrogateescape")
    return link