"""Download progress tracking and terminal rendering."""

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import IntEnum

from peerpressure.picker import BLOCK_SIZE, has_piece

_RESET = "\033[0m"
_BOLD = "\033[1m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_GREY = "\033[90m"
_CYAN = "\033[36m"

_MAX_MAP_ROWS = 8
_SPEED_BAR_CAP = 16


class PieceState(IntEnum):
    """Download state of a single piece."""

    EMPTY = 0  # no peer has this piece
    PENDING = 1  # at least one peer has it
    ACTIVE = 2  # currently downloading
    DONE = 3  # verified and written


_PIECE_CHARS = {
    PieceState.DONE: "█",
    PieceState.ACTIVE: "▓",
    PieceState.PENDING: "░",
    PieceState.EMPTY: "·",
}

_STATE_COLORS = {
    PieceState.DONE: _GREEN,
    PieceState.ACTIVE: _YELLOW,
    PieceState.PENDING: _GREY,
    PieceState.EMPTY: _GREY,
}


@dataclass
class PeerStats:
    """Download contribution from one peer."""

    addr: str
    bitfield: bytes = b""
    has_pieces: int = 0
    pieces: int = 0
    blocks: int = 0
    bytes: int = 0
    speed: float = 0.0
    connected: float = field(default_factory=time.time)


@dataclass
class PoolStats:
    """Overall state of the peer pool."""

    active_slots: int = 0
    max_slots: int = 0
    untried_peers: int = 0


def format_bytes(size: int) -> str:
    """Format a byte count with a binary unit."""
    if size >= 1 << 30:
        return f"{size / (1 << 30):.1f} GiB"
    if size >= 1 << 20:
        return f"{size / (1 << 20):.1f} MiB"
    if size >= 1 << 10:
        return f"{size / (1 << 10):.1f} KiB"
    return f"{size} B"


def format_speed(bytes_per_sec: float) -> str:
    """Format a transfer rate (without the trailing "/s")."""
    if bytes_per_sec >= 1 << 20:
        return f"{bytes_per_sec / (1 << 20):.1f} MiB"
    if bytes_per_sec >= 1 << 10:
        return f"{bytes_per_sec / (1 << 10):.1f} KiB"
    if bytes_per_sec > 0:
        return f"{bytes_per_sec:.0f} B"
    return "  0 B"


def format_duration(seconds: float) -> str:
    """Format a duration in seconds as e.g. "1h 2m", "3m 4s" or "5s"."""
    if seconds >= 3600:
        return f"{int(seconds / 3600)}h {int(seconds / 60) % 60}m"
    if seconds >= 60:
        return f"{int(seconds / 60)}m {int(seconds) % 60}s"
    return f"{int(seconds)}s"


def dominant_state(counts: Sequence[int]) -> PieceState:
    """Pick the state shown for a map cell from per-state piece counts.

    ``counts`` is indexed by PieceState. A cell is done only when every
    piece in it is done; otherwise active wins over pending over empty.
    """
    total = sum(counts[s] for s in PieceState)
    if counts[PieceState.DONE] == total:
        return PieceState.DONE
    if counts[PieceState.ACTIVE] > 0:
        return PieceState.ACTIVE
    if counts[PieceState.PENDING] > 0:
        return PieceState.PENDING
    return PieceState.EMPTY


def render_mini_bitfield(bitfield: bytes, num_pieces: int, width: int) -> str:
    """Render a peer's bitfield squeezed into ``width`` shaded cells."""
    if num_pieces == 0:
        return "·" * width

    parts = [_CYAN]
    for col in range(width):
        start = col * num_pieces // width
        end = min((col + 1) * num_pieces // width, num_pieces)
        total = (end - start) or 1
        has = sum(1 for i in range(start, end) if has_piece(bitfield, i))
        ratio = has / total
        if ratio >= 0.75:
            parts.append("█")
        elif ratio >= 0.5:
            parts.append("▓")
        elif ratio >= 0.25:
            parts.append("▒")
        elif ratio > 0:
            parts.append("░")
        else:
            parts.append(f"{_GREY}·{_CYAN}")
    parts.append(_RESET)
    return "".join(parts)


def _piece_row(row: Sequence[PieceState]) -> str:
    """Render a row of cells, batching equal neighbours into one colour run."""
    if not row:
        return ""
    parts: list[str] = []
    current = row[0]
    count = 0
    for state in row:
        if state == current:
            count += 1
            continue
        parts.append(_STATE_COLORS[current] + _PIECE_CHARS[current] * count)
        current, count = state, 1
    parts.append(_STATE_COLORS[current] + _PIECE_CHARS[current] * count)
    parts.append(_RESET)
    return "".join(parts)


class Progress:
    """Tracks download state for terminal display. Thread-safe."""

    def __init__(
        self, name: str, num_pieces: int, piece_len: int, total_bytes: int
    ) -> None:
        self._lock = threading.Lock()
        self.name = name
        self.total_bytes = total_bytes
        self.num_pieces = num_pieces
        self.piece_len = piece_len
        self._pieces = [PieceState.EMPTY] * num_pieces
        self._peers: dict[str, PeerStats] = {}
        self._pool = PoolStats()
        self._start = time.monotonic()
        self._bytes_down = 0
        self._pieces_done = 0
        self._last_lines = 0

    def peer_connected(self, addr: str, bitfield: bytes) -> None:
        """Register a peer and the pieces it advertises."""
        with self._lock:
            has = 0
            for i in range(self.num_pieces):
                if has_piece(bitfield, i):
                    has += 1
                    if self._pieces[i] == PieceState.EMPTY:
                        self._pieces[i] = PieceState.PENDING
            self._peers[addr] = PeerStats(
                addr=addr, bitfield=bytes(bitfield), has_pieces=has
            )

    def peer_disconnected(self, addr: str) -> None:
        """Forget a peer."""
        with self._lock:
            self._peers.pop(addr, None)

    def piece_started(self, index: int) -> None:
        """Mark a piece as actively downloading."""
        with self._lock:
            self._pieces[index] = PieceState.ACTIVE

    def block_received(self, addr: str, block_bytes: int) -> None:
        """Record a block received from a peer."""
        with self._lock:
            stats = self._peers.get(addr)
            if stats is not None:
                stats.blocks += 1
                stats.bytes += block_bytes
            self._bytes_down += block_bytes

    def piece_done(self, index: int, addr: str) -> None:
        """Mark a piece as completed and credit the peer, once."""
        with self._lock:
            if self._pieces[index] == PieceState.DONE:
                return
            self._pieces[index] = PieceState.DONE
            self._pieces_done += 1
            stats = self._peers.get(addr)
            if stats is not None:
                stats.pieces += 1

    def piece_failed(self, index: int) -> None:
        """Put a piece back to pending."""
        with self._lock:
            self._pieces[index] = PieceState.PENDING

    def update_peer_speed(self, addr: str, bytes_per_sec: float) -> None:
        """Set the measured speed of a peer."""
        with self._lock:
            stats = self._peers.get(addr)
            if stats is not None:
                stats.speed = bytes_per_sec

    def set_pool_stats(self, stats: PoolStats) -> None:
        """Update the pool-level figures shown in the display."""
        with self._lock:
            self._pool = stats

    def render(self, width: int) -> str:
        """Return the whole display, with ANSI colours, as one string."""
        with self._lock:
            return self._render(width if width > 0 else 80)

    def _render(self, width: int) -> str:
        out: list[str] = []
        n = self.num_pieces
        done = self._pieces_done

        pct = done * 100 // n if n > 0 else 0
        out.append(f"{_BOLD}⚡ Peer Pressure{_RESET} — {self.name}\n")
        out.append(
            f"   {format_bytes(self.total_bytes)} total, "
            f"{format_bytes(self.piece_len)} pieces, "
            f"{n} pcs × {format_bytes(BLOCK_SIZE)}\n"
        )
        out.append("\n")

        bar_width = max(width - 30, 20)
        filled = min(done * bar_width // n if n > 0 else 0, bar_width)
        active = self._pieces.count(PieceState.ACTIVE)
        active_bar = active * bar_width // n if n > 0 else 0
        if active_bar + filled > bar_width:
            active_bar = bar_width - filled
        active_bar = max(active_bar, 0)
        empty_bar = max(bar_width - filled - active_bar, 0)
        out.append(
            f"  Progress {_GREEN}{'█' * filled}{_YELLOW}{'▓' * active_bar}"
            f"{_GREY}{'░' * empty_bar}{_RESET} {pct}%  {done}/{n} pcs\n"
        )

        elapsed = time.monotonic() - self._start
        speed = self._bytes_down / elapsed if elapsed > 0 else 0.0
        remaining = self.total_bytes - self._bytes_down
        eta = ""
        if speed > 0 and remaining > 0:
            eta = format_duration(remaining / speed)
        elif done == n:
            eta = "done!"
        out.append(
            f"  Speed: {format_bytes(int(speed))}/s  "
            f"Downloaded: {format_bytes(self._bytes_down)}  ETA: {eta}\n"
        )
        out.append("\n")

        out.append(
            f"  {_BOLD}Piece Map{_RESET}  {_GREEN}█{_RESET} done  "
            f"{_YELLOW}▓{_RESET} active  {_GREY}░{_RESET} pending  "
            f"{_GREY}·{_RESET} empty\n"
        )
        map_width = max(width - 4, 20)
        total_rows = (n + map_width - 1) // map_width
        if total_rows > _MAX_MAP_ROWS:
            total_cells = _MAX_MAP_ROWS * map_width
            cells: list[PieceState] = []
            for cell in range(total_cells):
                start = cell * n // total_cells
                end = min((cell + 1) * n // total_cells, n)
                counts = [0] * len(PieceState)
                for state in self._pieces[start:end]:
                    counts[state] += 1
                cells.append(dominant_state(counts))
            rows = [
                cells[i : i + map_width] for i in range(0, total_cells, map_width)
            ]
        else:
            rows = [
                self._pieces[i : i + map_width] for i in range(0, n, map_width)
            ]
        for row in rows:
            out.append(f"  {_piece_row(row)}\n")
        out.append("\n")

        pool = self._pool
        label = f"  {_BOLD}Peer Pool{_RESET}  {pool.active_slots}/{pool.max_slots} slots"
        if pool.untried_peers > 0:
            label += f"  {pool.untried_peers} queued"
        out.append(label + "\n")

        if not self._peers:
            out.append(f"  {_GREY}(no peers connected){_RESET}\n")
        else:
            ordered = sorted(self._peers.values(), key=lambda s: s.bytes, reverse=True)
            max_speed = max(ordered[0].speed, 1.0)
            for stats in ordered:
                fill = 0
                if stats.speed > 0:
                    fill = int(stats.speed / max_speed * _SPEED_BAR_CAP)
                    fill = min(max(fill, 1), _SPEED_BAR_CAP)
                ratio = stats.speed / max_speed
                if ratio < 0.25:
                    color = _RED
                elif ratio < 0.5:
                    color = _YELLOW
                else:
                    color = _GREEN
                out.append(
                    f"  {stats.addr:<21} {color}{'█' * fill}"
                    f"{_GREY}{'░' * (_SPEED_BAR_CAP - fill)}{_RESET} "
                    f"{format_speed(stats.speed):>8}/s  {stats.blocks:4d} blks  "
                    f"{format_bytes(stats.bytes)}\n"
                )

        return "".join(out)

    def print_over(self, width: int) -> None:
        """Render to stdout, overwriting the previous render."""
        with self._lock:
            lines = self._last_lines

        stream = sys.stdout
        if lines > 0:
            stream.write(f"\033[{lines}A")

        output = self.render(width).replace("\n", "\033[K\n")
        new_lines = output.count("\n")
        stream.write(output)

        if new_lines < lines:
            stream.write("\033[K\n" * (lines - new_lines))
            stream.write(f"\033[{lines - new_lines}A")
        stream.flush()

        with self._lock:
            self._last_lines = new_lines