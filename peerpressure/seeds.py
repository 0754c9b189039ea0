"""Piece download from HTTP seeds: Hoffman-style scripts and plain web seeds."""

from __future__ import annotations

import hashlib
import http.client
import re
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from peerpressure.picker import Picker, make_full_bitfield
from peerpressure.progress import Progress

_HTTP_TIMEOUT = 60.0
_ERROR_BACKOFF = 2.0
_DEFAULT_RETRY_SECONDS = 30
_ATOI_RE = re.compile(r"[+-]?[0-9]+")
_FETCH_ERRORS = (OSError, ValueError, http.client.HTTPException)


@dataclass
class SeedTorrent:
    """The parts of a torrent's metadata that seed workers need."""

    name: str
    piece_length: int
    pieces: list[bytes]
    length: int
    info_hash: bytes = bytes(20)

    def piece_len(self, index: int) -> int:
        """Return the size of piece ``index``; the last piece may be shorter."""
        return min(self.piece_length, self.length - index * self.piece_length)


@dataclass
class PieceResult:
    """Outcome of one piece download: data on success, error on failure."""

    index: int
    data: bytes | None = None
    from_addr: str = ""
    error: BaseException | None = field(default=None)


class RetryError(ConnectionError):
    """The server answered 503 and asked for a pause before the next try."""

    def __init__(self, wait: float) -> None:
        super().__init__(f"503 retry after {wait:g}s")
        self.wait = wait


def retry_after(error: BaseException) -> float | None:
    """Return the wait in seconds carried by a RetryError, else None."""
    if isinstance(error, RetryError):
        return error.wait
    return None


def percent_encode_info_hash(info_hash: bytes) -> str:
    """Percent-encode a raw info hash for use in a URL query."""
    return urllib.parse.quote_from_bytes(bytes(info_hash), safe="")


def _http_get(request: urllib.request.Request) -> tuple[int, bytes]:
    try:
        with urllib.request.urlopen(request, timeout=_HTTP_TIMEOUT) as response:
            return response.status, response.read()
    except urllib.error.HTTPError as exc:
        with exc:
            return exc.code, exc.read()


class _SeedWorker:
    """Shared pick / fetch / verify loop for HTTP-based seeds."""

    _label = "seed"

    def __init__(
        self,
        url: str,
        torrent: SeedTorrent,
        picker: Picker,
        results: Any,
        progress: Progress | None,
    ) -> None:
        self.url = url
        self.torrent = torrent
        self.picker = picker
        self.results = results
        self.progress = progress
        self.downloaded = 0
        self._count_lock = threading.Lock()

    def fetch_piece(self, index: int) -> bytes:
        raise NotImplementedError

    def _run_loop(self, stop: threading.Event) -> None:
        bitfield = make_full_bitfield(len(self.torrent.pieces))
        self.picker.add_peer(bitfield)
        if self.progress is not None:
            self.progress.peer_connected(self.url, bitfield)
        try:
            while not stop.is_set():
                index = self.picker.pick(bitfield)
                if index is None:
                    return
                if not self._download(index, stop):
                    return
        finally:
            if self.progress is not None:
                self.progress.peer_disconnected(self.url)
            self.picker.remove_peer(bitfield)

    def _download(self, index: int, stop: threading.Event) -> bool:
        """Fetch and verify one piece; return False when the worker must stop."""
        if self.progress is not None:
            self.progress.piece_started(index)

        try:
            data = self.fetch_piece(index)
        except _FETCH_ERRORS as exc:
            failure = ConnectionError(f"{self._label} {self.url}: {exc}")
            failure.__cause__ = exc
            self._fail(index, failure)
            wait = retry_after(exc)
            return not stop.wait(_ERROR_BACKOFF if wait is None else wait)

        if hashlib.sha1(data).digest() != self.torrent.pieces[index]:
            self._fail(index, ValueError(f"{self._label} piece {index} hash mismatch"))
            return True

        self.picker.finish(index)
        self.results.put(PieceResult(index=index, data=data, from_addr=self.url))
        if self.progress is not None:
            self.progress.piece_done(index, self.url)
        return True

    def _fail(self, index: int, error: BaseException) -> None:
        self.picker.abort(index)
        self.results.put(PieceResult(index=index, error=error))
        if self.progress is not None:
            self.progress.piece_failed(index)

    def _accept(self, index: int, data: bytes) -> bytes:
        want = self.torrent.piece_len(index)
        if len(data) != want:
            raise ValueError(f"short read: got {len(data)}, want {want}")
        with self._count_lock:
            self.downloaded += len(data)
        if self.progress is not None:
            self.progress.block_received(self.url, len(data))
        return data


class HTTPSeedWorker(_SeedWorker):
    """Downloads pieces from a script-style HTTP seed.

    Each piece is requested as ``<url>?info_hash=<hash>&piece=<N>``.
    """

    _label = "httpseed"

    def __init__(
        self,
        seed_url: str,
        torrent: SeedTorrent,
        picker: Picker,
        results: Any,
        progress: Progress | None,
    ) -> None:
        super().__init__(seed_url, torrent, picker, results, progress)

    def run(self, stop: threading.Event) -> None:
        """Pick and download pieces until ``stop`` is set or none remain."""
        self._run_loop(stop)

    def fetch_piece(self, index: int) -> bytes:
        """Download one piece; raise RetryError on 503, ConnectionError otherwise."""
        query = f"info_hash={percent_encode_info_hash(self.torrent.info_hash)}&piece={index}"
        status, body = _http_get(urllib.request.Request(f"{self.url}?{query}"))

        if status == 503:
            text = body.decode("ascii", "replace")
            secs = int(text) if _ATOI_RE.fullmatch(text) else 0
            raise RetryError(secs if secs > 0 else _DEFAULT_RETRY_SECONDS)
        if status != 200:
            raise ConnectionError(f"HTTP {status}")
        return self._accept(index, body)


class WebSeedWorker(_SeedWorker):
    """Downloads pieces from a plain web seed using HTTP Range requests."""

    _label = "webseed"

    def __init__(
        self,
        seed_url: str,
        torrent: SeedTorrent,
        picker: Picker,
        results: Any,
        progress: Progress | None,
    ) -> None:
        url = seed_url + torrent.name if seed_url.endswith("/") else seed_url
        super().__init__(url, torrent, picker, results, progress)

    def run(self, stop: threading.Event) -> None:
        """Pick and download pieces until ``stop`` is set or none remain."""
        self._run_loop(stop)

    def fetch_piece(self, index: int) -> bytes:
        """Download exactly the bytes of one piece."""
        start = index * self.torrent.piece_length
        end = start + self.torrent.piece_len(index) - 1
        request = urllib.request.Request(
            self.url, headers={"Range": f"bytes={start}-{end}"}
        )
        status, body = _http_get(request)
        if status not in (200, 206):
            raise ConnectionError(f"HTTP {status}")
        return self._accept(index, body)