# peerpressure

Building blocks for a BitTorrent client. The package uses only the Python
standard library.

## What is inside

- `peerpressure.picker`
  - `Picker` chooses the rarest piece first. Ties are broken at random.
    Once every remaining piece is already in flight, it switches to endgame
    mode and hands out in-flight pieces again.
  - `pick(bitfield)` returns a piece index, or `None` when nothing suitable
    is left.
  - `finish`, `abort`, `is_done`, `all_done`, `remaining` and `endgame`
    track the state of the pieces.
  - The module also has helpers for MSB-first bitfields: `has_piece`,
    `make_bitfield`, `make_full_bitfield`, and `block_count` (16 KiB blocks,
    `BLOCK_SIZE`).
- `peerpressure.progress`
  - `Progress` tracks the state of each piece and statistics for each peer.
  - `render(width)` returns a colour terminal display as a string: header,
    progress bar, speed and ETA, piece map and peer table.
  - `print_over(width)` redraws that display in place on stdout.
  - The module also provides `PieceState`, `PeerStats`, `PoolStats`, and the
    formatting helpers `format_bytes`, `format_speed`, `format_duration`,
    `dominant_state` and `render_mini_bitfield`.
- `peerpressure.seeds`
  - `WebSeedWorker` fetches pieces from a plain web seed with HTTP Range
    requests (BEP 19). A seed URL ending in `/` gets the torrent name
    appended.
  - `HTTPSeedWorker` fetches pieces from a script-style seed (BEP 17) with
    `?info_hash=...&piece=N`. When the seed answers 503, the worker raises
    `RetryError` and waits the number of seconds in the response body, or
    30 seconds if the body gives none.
  - Both workers take a `SeedTorrent`, a `Picker`, a results object with a
    `put` method (such as `queue.Queue`) and an optional `Progress`.
  - `run(stop)` loops until the `threading.Event` is set or no pieces remain.
  - For each piece, the workers put a `PieceResult` on the results object.
    They check every piece against its SHA-1 hash.
- `peerpressure.lsd`
  - `format_announce` and `parse_announce` build and read Local Service
    Discovery BT-SEARCH messages. `parse_announce` raises `LSDError` on a
    malformed message.
  - `Service` joins the IPv4 multicast group and announces each registered
    info hash every five minutes, with random jitter.
  - For each announcement it hears from another client about an info hash
    it has registered, it puts a `Peer` on the given queue.
  - Its own announcements are ignored by cookie.
- `peerpressure.magnet`
  - `parse` reads `magnet:?xt=urn:btih:...` URIs into a `Link`. The info
    hash may be hex or base32. The link also takes the display name, the
    trackers and the BEP 53 select-only indices.
  - `parse_updateable` reads BEP 46 `xs=urn:btpk:...` URIs into an
    `UpdateableLink`. Its `target_id()` gives the DHT target.
  - `str()` of either link type gives back a magnet URI.
  - Malformed input raises `MagnetError`.

## What it does not do

- The package does not speak the peer wire protocol. It has no TCP
  connections to peers and does not fetch metadata from peers.
- It does not read `.torrent` files. `SeedTorrent` is filled in by the
  caller.
- It does not write the downloaded file to disk. Verified piece data is
  handed to the caller through `PieceResult`.
- It has no command-line program.

## Install

```
pip install .
```

## Examples

```python
from peerpressure.picker import Picker, make_bitfield

picker = Picker(4)
bitfield = make_bitfield(4, [0, 1, 2])
picker.add_peer(bitfield)
index = picker.pick(bitfield)   # rarest piece this peer has, or None
if index is not None:
    picker.finish(index)
print(picker.remaining())
```

```python
from peerpressure.magnet import parse

link = parse("magnet:?xt=urn:btih:a89dd41fc8201849488a04623b3c0dc45d1a8c4e&dn=demo&so=0,2,4-6")
print(link.name, link.select_only)   # demo [0, 2, 4, 5, 6]
print(str(link))
```

```python
from peerpressure.lsd import Announce, format_announce, parse_announce

data = format_announce(Announce(host="239.192.152.143:6771", port=6881,
                                infohash=bytes(20), cookie="placeholder"))
print(parse_announce(data).port)   # 6881
```

```python
import queue
import threading

from peerpressure.picker import Picker
from peerpressure.seeds import SeedTorrent, WebSeedWorker

torrent = SeedTorrent(name="file.bin", piece_length=32, pieces=[...], length=96)
results = queue.Queue()
worker = WebSeedWorker("http://localhost:8000/", torrent, Picker(len(torrent.pieces)),
                       results, None)
stop = threading.Event()
threading.Thread(target=worker.run, args=(stop,), daemon=True).start()
result = results.get()   # PieceResult with .data or .error
```

## Tests

```
pip install .[test]
pytest
```