"""Local Service Discovery: BT-SEARCH announcements over UDP multicast."""

from __future__ import annotations

import logging
import queue
import re
import secrets
import socket
import struct
import threading
import time
from dataclasses import dataclass, field
from typing import Any

IPV4_MULTICAST = "239.192.152.143"
IPV6_MULTICAST = "ff15::efc0:988f"
PORT = 6771

ANNOUNCE_INTERVAL = 5 * 60.0
ANNOUNCE_JITTER = 30.0
MULTICAST_TTL = 1
MAX_DATAGRAM = 512

_REQUEST_LINE = "BT-SEARCH * HTTP/1.1"
_PORT_RE = re.compile(r"[0-9]+")
_HEX40_RE = re.compile(r"[0-9a-fA-F]{40}")

_log = logging.getLogger(__name__)


class LSDError(ValueError):
    """Raised for malformed announcements and multicast setup failures."""


@dataclass
class Announce:
    """One LSD announcement."""

    host: str = ""
    port: int = 0
    infohash: bytes = field(default=bytes(20))
    cookie: str = ""


@dataclass(frozen=True)
class Peer:
    """A peer discovered on the local network."""

    addr: str
    infohash: bytes


def format_announce(announce: Announce) -> bytes:
    """Serialise an announcement into the BT-SEARCH wire format."""
    text = (
        f"{_REQUEST_LINE}\r\n"
        f"Host: {announce.host}\r\n"
        f"Port: {announce.port}\r\n"
        f"Infohash: {announce.infohash.hex()}\r\n"
        f"cookie: {announce.cookie}\r\n"
        "\r\n"
    )
    return text.encode("utf-8", "surrogateescape")


def parse_announce(data: bytes) -> Announce:
    """Parse a raw datagram into an Announce, raising LSDError if malformed."""
    lines = data.decode("utf-8", "surrogateescape").split("\r\n")
    if lines[0] != _REQUEST_LINE:
        raise LSDError("lsd: not a BT-SEARCH message")

    announce = Announce()
    has_port = has_hash = False

    for line in lines[1:]:
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()

        if key == "host":
            announce.host = value
        elif key == "port":
            if not _PORT_RE.fullmatch(value) or int(value) > 0xFFFF:
                raise LSDError(f"lsd: bad port {value!r}")
            announce.port = int(value)
            has_port = True
        elif key == "infohash":
            if len(value) != 40:
                raise LSDError(f"lsd: invalid infohash: length {len(value)}")
            if not _HEX40_RE.fullmatch(value):
                raise LSDError(f"lsd: invalid infohash: bad hex {value!r}")
            announce.infohash = bytes.fromhex(value)
            has_hash = True
        elif key == "cookie":
            announce.cookie = value

    if not has_port:
        raise LSDError("lsd: missing Port header")
    if not has_hash:
        raise LSDError("lsd: missing Infohash header")
    return announce


def generate_cookie() -> str:
    """Return a random cookie used to recognise our own announcements."""
    return "pp-" + secrets.token_hex(8)


def jitter_duration(max_seconds: float) -> float:
    """Return a random offset in seconds within [-max_seconds, max_seconds)."""
    ns = int(max_seconds * 1_000_000_000)
    return (secrets.randbelow(2 * ns) - ns) / 1_000_000_000


class Service:
    """Announces active torrents on the LAN and reports peers heard there.

    Discovered peers are put on ``peers``, any object with a
    ``put(item, timeout=...)`` method such as ``queue.Queue``.
    """

    def __init__(self, listen_port: int, peers: Any) -> None:
        self.listen_port = listen_port
        self.cookie = generate_cookie()
        self._peers = peers
        self._active: set[bytes] = set()
        self._lock = threading.Lock()

    def add_infohash(self, infohash: bytes) -> None:
        """Start announcing and discovering peers for a torrent."""
        with self._lock:
            self._active.add(bytes(infohash))

    def remove_infohash(self, infohash: bytes) -> None:
        """Stop announcing a torrent."""
        with self._lock:
            self._active.discard(bytes(infohash))

    def is_active(self, infohash: bytes) -> bool:
        """Report whether a torrent is registered."""
        with self._lock:
            return bytes(infohash) in self._active

    def run(self, stop: threading.Event) -> None:
        """Listen and announce until ``stop`` is set."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(("", PORT))
            mreq = struct.pack(
                "4s4s", socket.inet_aton(IPV4_MULTICAST), socket.inet_aton("0.0.0.0")
            )
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, MAX_DATAGRAM * 4)
        except OSError as exc:
            sock.close()
            raise LSDError(f"lsd: join multicast: {exc}") from exc

        with sock:
            sock.settimeout(0.5)
            workers = [
                threading.Thread(target=self._listen, args=(sock, stop), daemon=True),
                threading.Thread(target=self._announce, args=(stop,), daemon=True),
            ]
            for worker in workers:
                worker.start()
            stop.wait()
            for worker in workers:
                worker.join()

    def _peer_from_datagram(self, data: bytes, src_ip: str) -> Peer | None:
        try:
            announce = parse_announce(data)
        except LSDError:
            return None
        if announce.cookie == self.cookie:
            return None
        if not self.is_active(announce.infohash):
            return None
        return Peer(addr=f"{src_ip}:{announce.port}", infohash=announce.infohash)

    def _listen(self, sock: socket.socket, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                data, src = sock.recvfrom(MAX_DATAGRAM)
            except socket.timeout:
                continue
            except OSError as exc:
                if stop.is_set():
                    return
                _log.debug("lsd: read error: %s", exc)
                continue
            found = self._peer_from_datagram(data, src[0])
            if found is not None:
                self._deliver(found, stop)

    def _deliver(self, found: Peer, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self._peers.put(found, timeout=0.5)
                return
            except queue.Full:
                continue

    def _announce(self, stop: threading.Event) -> None:
        self._send_announces()
        while not stop.wait(ANNOUNCE_INTERVAL + jitter_duration(ANNOUNCE_JITTER)):
            self._send_announces()

    def _send_announces(self) -> None:
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        except OSError as exc:
            _log.debug("lsd: dial multicast: %s", exc)
            return
        with sock:
            try:
                sock.setsockopt(
                    socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, MULTICAST_TTL
                )
                sock.connect((IPV4_MULTICAST, PORT))
            except OSError as exc:
                _log.debug("lsd: dial multicast: %s", exc)
                return

            with self._lock:
                hashes = list(self._active)

            host = f"{IPV4_MULTICAST}:{PORT}"
            for infohash in hashes:
                data = format_announce(
                    Announce(
                        host=host,
                        port=self.listen_port,
                        infohash=infohash,
                        cookie=self.cookie,
                    )
                )
                try:
                    sock.send(data)
                except OSError as exc:
                    _log.debug("lsd: send announce: %s", exc)
                # Stagger between torrents to avoid packet loss.
                time.sleep(0.01)