"""Rarest-first piece selection and BitTorrent bitfield helpers."""

from __future__ import annotations

import random
import threading
from collections.abc import Iterable

BLOCK_SIZE = 16384
"""Standard block size (16 KiB) used when requesting piece data."""


def has_piece(bitfield: bytes, index: int) -> bool:
    """Report whether the MSB-first ``bitfield`` has the bit for ``index`` set."""
    byte_idx, bit = divmod(index, 8)
    if byte_idx >= len(bitfield):
        return False
    return bool(bitfield[byte_idx] & (1 << (7 - bit)))


def make_bitfield(num_pieces: int, pieces: Iterable[int] | None) -> bytes:
    """Build a bitfield of ``num_pieces`` bits with the given piece indices set."""
    bf = bytearray((num_pieces + 7) // 8)
    for idx in pieces or ():
        byte_idx, bit = divmod(idx, 8)
        bf[byte_idx] |= 1 << (7 - bit)
    return bytes(bf)


def make_full_bitfield(num_pieces: int) -> bytes:
    """Build a bitfield with every one of ``num_pieces`` bits set.

    Spare bits in the last byte stay clear.
    """
    if num_pieces <= 0:
        return b""
    num_bytes = (num_pieces + 7) // 8
    bf = bytearray(b"\xff" * num_bytes)
    spare = num_bytes * 8 - num_pieces
    if spare:
        bf[-1] = (0xFF << spare) & 0xFF
    return bytes(bf)


def block_count(piece_length: int) -> int:
    """Return how many blocks a piece of ``piece_length`` bytes needs."""
    return (piece_length + BLOCK_SIZE - 1) // BLOCK_SIZE


class Picker:
    """Chooses the next piece to download, rarest first.

    Tracks how many peers have each piece, which pieces are in flight and
    which are done. All methods are safe to call from several threads.
    """

    def __init__(self, num_pieces: int) -> None:
        self._lock = threading.Lock()
        self._num_pieces = num_pieces
        self._frequency = [0] * num_pieces
        self._done = [False] * num_pieces
        self._inflight = [False] * num_pieces
        self._endgame = False

    def _indices(self, bitfield: bytes) -> Iterable[int]:
        return (i for i in range(self._num_pieces) if has_piece(bitfield, i))

    def add_peer(self, bitfield: bytes) -> None:
        """Count the pieces advertised by a peer's bitfield."""
        with self._lock:
            for i in self._indices(bitfield):
                self._frequency[i] += 1

    def remove_peer(self, bitfield: bytes) -> None:
        """Forget the pieces advertised by a peer's bitfield."""
        with self._lock:
            for i in self._indices(bitfield):
                self._frequency[i] -= 1

    def pick(self, peer_bitfield: bytes) -> int | None:
        """Return the rarest needed piece the peer has, or None.

        Ties are broken at random. When every remaining piece is already in
        flight, endgame mode starts and in-flight pieces may be handed out
        again.
        """
        with self._lock:
            best: int | None = None
            candidates: list[int] = []
            for i in self._indices(peer_bitfield):
                if self._done[i] or (self._inflight[i] and not self._endgame):
                    continue
                freq = self._frequency[i]
                if best is None or freq < best:
                    best = freq
                    candidates = [i]
                elif freq == best:
                    candidates.append(i)

            if not candidates:
                if not self._endgame and self._should_enter_endgame():
                    self._endgame = True
                    return self._pick_endgame(peer_bitfield)
                return None

            choice = random.choice(candidates)
            self._inflight[choice] = True
            return choice

    def _pick_endgame(self, peer_bitfield: bytes) -> int | None:
        candidates = [
            i
            for i in self._indices(peer_bitfield)
            if not self._done[i] and self._inflight[i]
        ]
        return random.choice(candidates) if candidates else None

    def _should_enter_endgame(self) -> bool:
        pending = [i for i, done in enumerate(self._done) if not done]
        return bool(pending) and all(self._inflight[i] for i in pending)

    def endgame(self) -> bool:
        """Report whether endgame mode is active."""
        with self._lock:
            return self._endgame

    def finish(self, index: int) -> None:
        """Mark a piece as downloaded and verified."""
        with self._lock:
            self._done[index] = True
            self._inflight[index] = False

    def is_done(self, index: int) -> bool:
        """Report whether one piece has been completed."""
        with self._lock:
            return self._done[index]

    def abort(self, index: int) -> None:
        """Return a failed piece to the pool of pickable pieces."""
        with self._lock:
            self._inflight[index] = False

    def all_done(self) -> bool:
        """Report whether every piece has been completed."""
        with self._lock:
            return all(self._done)

    def remaining(self) -> int:
        """Return how many pieces are not yet completed."""
        with self._lock:
            return self._done.count(False)