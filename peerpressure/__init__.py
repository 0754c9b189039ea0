"""BitTorrent piece picking, progress display, HTTP seeds, local discovery and magnet links."""

__version__ = "0.1.0"
__all__ = ["picker", "lsd", "progress", "seeds", "magnet"]