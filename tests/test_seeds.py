import hashlib
import queue
import re
import threading
import urllib.parse
from contextlib import contextmanager
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from peerpressure.picker import Picker
from peerpressure.progress import Progress
from peerpressure.seeds import (
    HTTPSeedWorker,
    PieceResult,
    RetryError,
    SeedTorrent,
    WebSeedWorker,
    percent_encode_info_hash,
    retry_after,
)


@contextmanager
def serve(respond):
    """Run a local HTTP server; ``respond(handler)`` returns (status, headers, body)."""

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            status, headers, body = respond(self)
            self.send_response(status)
            for key, value in headers.items():
                self.send_header(key, value)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_port}"
    finally:
        server.shutdown()
        server.server_close()


@contextmanager
def running(worker):
    stop = threading.Event()
    thread = threading.Thread(target=worker.run, args=(stop,), daemon=True)
    thread.start()
    try:
        yield thread
    finally:
        stop.set()
        thread.join(timeout=10)


def query_of(handler):
    return urllib.parse.parse_qs(urllib.parse.urlsplit(handler.path).query)


def range_respond(file_data):
    def respond(handler):
        header = handler.headers.get("Range")
        if not header:
            return 200, {}, file_data
        start, end = map(int, re.fullmatch(r"bytes=(\d+)-(\d+)", header).groups())
        return (
            206,
            {"Content-Range": f"bytes {start}-{end}/{len(file_data)}"},
            file_data[start : end + 1],
        )

    return respond


def test_httpseed_fetch_piece():
    piece = bytes(range(256))
    tor = SeedTorrent(
        name="test", piece_length=256, pieces=[hashlib.sha1(piece).digest()], length=256
    )
    seen = {}

    def respond(handler):
        seen.update(query_of(handler))
        return 200, {}, piece

    results = queue.Queue()
    with serve(respond) as base:
        worker = HTTPSeedWorker(base + "/seed", tor, Picker(1), results, None)
        with running(worker):
            res = results.get(timeout=5)

    assert res.error is None
    assert res.index == 0
    assert res.data == piece
    assert res.from_addr == base + "/seed"
    assert seen["piece"] == ["0"]
    assert "info_hash" in seen


def test_httpseed_multiple_pieces():
    pieces = [bytes((i * 128 + j) % 256 for j in range(128)) for i in range(3)]
    tor = SeedTorrent(
        name="multi",
        piece_length=128,
        pieces=[hashlib.sha1(p).digest() for p in pieces],
        length=384,
    )

    def respond(handler):
        idx = query_of(handler).get("piece", [""])[0]
        if idx in ("0", "1", "2"):
            return 200, {}, pieces[int(idx)]
        return 400, {}, b"bad piece"

    results = queue.Queue()
    with serve(respond) as base:
        worker = HTTPSeedWorker(base + "/seed", tor, Picker(3), results, None)
        with running(worker):
            got = [results.get(timeout=5) for _ in range(3)]

    assert all(r.error is None for r in got)
    assert {r.index: r.data for r in got} == dict(enumerate(pieces))
    assert worker.downloaded == 384


def test_httpseed_503_retry():
    piece = bytes(64)
    tor = SeedTorrent(
        name="retry", piece_length=64, pieces=[hashlib.sha1(piece).digest()], length=64
    )
    calls = []

    def respond(handler):
        calls.append(1)
        if len(calls) == 1:
            return 503, {}, b"1"
        return 200, {}, piece

    results = queue.Queue()
    with serve(respond) as base:
        worker = HTTPSeedWorker(base + "/seed", tor, Picker(1), results, None)
        with running(worker):
            first = results.get(timeout=10)
            second = results.get(timeout=10)

    assert first.error is not None
    assert isinstance(first.error.__cause__, RetryError)
    assert second.error is None
    assert second.index == 0


def test_httpseed_hash_mismatch():
    tor = SeedTorrent(
        name="mismatch",
        piece_length=64,
        pieces=[hashlib.sha1(b"correct data that doesn't match").digest()],
        length=64,
    )
    results = queue.Queue()
    with serve(lambda handler: (200, {}, bytes(64))) as base:
        worker = HTTPSeedWorker(base + "/seed", tor, Picker(1), results, None)
        with running(worker):
            res = results.get(timeout=5)

    assert res.data is None
    assert "hash mismatch" in str(res.error)


def test_httpseed_fetch_piece_503_default_wait():
    tor = SeedTorrent(name="x", piece_length=4, pieces=[bytes(20)], length=4)
    with serve(lambda handler: (503, {}, b"")) as base:
        worker = HTTPSeedWorker(base, tor, Picker(1), queue.Queue(), None)
        with pytest.raises(RetryError) as info:
            worker.fetch_piece(0)
    assert info.value.wait == 30


def test_httpseed_fetch_piece_http_error():
    tor = SeedTorrent(name="x", piece_length=4, pieces=[bytes(20)], length=4)
    with serve(lambda handler: (404, {}, b"nope")) as base:
        worker = HTTPSeedWorker(base, tor, Picker(1), queue.Queue(), None)
        with pytest.raises(ConnectionError, match="HTTP 404"):
            worker.fetch_piece(0)


def test_httpseed_reports_progress():
    piece = b"abcd" * 16
    tor = SeedTorrent(
        name="prog", piece_length=64, pieces=[hashlib.sha1(piece).digest()], length=64
    )
    progress = Progress("prog", 1, 64, 64)
    results = queue.Queue()
    with serve(lambda handler: (200, {}, piece)) as base:
        worker = HTTPSeedWorker(base, tor, Picker(1), results, progress)
        with running(worker) as thread:
            results.get(timeout=5)
            thread.join(timeout=5)
            assert not thread.is_alive()
    assert "1/1 pcs" in progress.render(80)


def test_percent_encode_info_hash():
    info_hash = bytearray(20)
    info_hash[0] = ord("a")
    info_hash[1] = 0xFF
    info_hash[2] = ord("5")
    info_hash[3] = 0x00
    got = percent_encode_info_hash(bytes(info_hash))
    assert got[:8] == "a%FF5%00"


def test_percent_encode_info_hash_all_zeros():
    assert percent_encode_info_hash(bytes(20)) == "%00" * 20


def test_percent_encode_keeps_unreserved():
    assert percent_encode_info_hash(b"-_.~Az9/") == "-_.~Az9%2F"


def test_retry_after():
    assert retry_after(RetryError(5)) == 5
    assert retry_after(ConnectionError("HTTP 500")) is None


def test_seed_torrent_piece_len_last_piece_shorter():
    tor = SeedTorrent(name="t", piece_length=100, pieces=[bytes(20)] * 3, length=250)
    assert [tor.piece_len(i) for i in range(3)] == [100, 100, 50]


def test_webseed_fetch_pieces():
    piece_len, num_pieces = 32, 3
    file_data = bytes(i % 256 for i in range(piece_len * num_pieces))
    hashes = [
        hashlib.sha1(file_data[i * piece_len : (i + 1) * piece_len]).digest()
        for i in range(num_pieces)
    ]
    tor = SeedTorrent(
        name="test.bin", piece_length=piece_len, pieces=hashes, length=len(file_data)
    )
    results = queue.Queue()
    with serve(range_respond(file_data)) as base:
        worker = WebSeedWorker(base + "/test.bin", tor, Picker(num_pieces), results, None)
        with running(worker):
            got = [results.get(timeout=5) for _ in range(num_pieces)]

    assert all(r.error is None for r in got)
    by_index = {r.index: r.data for r in got}
    for i in range(num_pieces):
        assert by_index[i] == file_data[i * piece_len : (i + 1) * piece_len]


def test_webseed_bad_hash():
    file_data = b"\xaa" * 16
    bad_hash = b"\xff" + bytes(19)
    tor = SeedTorrent(name="bad.bin", piece_length=16, pieces=[bad_hash], length=16)
    results = queue.Queue()
    with serve(range_respond(file_data)) as base:
        worker = WebSeedWorker(base + "/bad.bin", tor, Picker(1), results, None)
        with running(worker):
            res = results.get(timeout=5)
    assert isinstance(res, PieceResult)
    assert "hash mismatch" in str(res.error)


def test_webseed_server_error():
    tor = SeedTorrent(name="error.bin", piece_length=16, pieces=[bytes(20)], length=16)
    results = queue.Queue()
    with serve(lambda handler: (500, {}, b"")) as base:
        worker = WebSeedWorker(base + "/error.bin", tor, Picker(1), results, None)
        with running(worker):
            res = results.get(timeout=5)
    assert "HTTP 500" in str(res.error)


def test_webseed_appends_name_to_directory_url():
    tor = SeedTorrent(name="file.iso", piece_length=16, pieces=[bytes(20)], length=16)
    worker = WebSeedWorker("http://seed.example.com/", tor, Picker(1), queue.Queue(), None)
    assert worker.url == "http://seed.example.com/file.iso"


def test_webseed_short_read():
    tor = SeedTorrent(name="s.bin", piece_length=16, pieces=[bytes(20)], length=16)
    with serve(lambda handler: (200, {}, b"short")) as base:
        worker = WebSeedWorker(base + "/s.bin", tor, Picker(1), queue.Queue(), None)
        with pytest.raises(ValueError, match="short read: got 5, want 16"):
            worker.fetch_piece(0)