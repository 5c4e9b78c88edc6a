"""Adaptive hex dump rendering."""

from __future__ import annotations


def row_width(size: int, wide_threshold: int = 256) -> int:
    return 16 if size > wide_threshold else 8


def render(data: bytes, *, wide_threshold: int = 256, max_bytes: int = 64 * 1024) -> str:
    """Offset / hex / ASCII rows; 8 bytes per row for small values, 16 above the threshold."""

    width = row_width(len(data), wide_threshold)
    shown = data[:max_bytes]
    lines = []
    for offset in range(0, len(shown), width):
        chunk = shown[offset : offset + width]
        cells = [f"{byte:02x}" for byte in chunk]
        if width == 16:
            hex_part = " ".join(cells[:8]) + "  " + " ".join(cells[8:])
            pad = width * 3
        else:
            hex_part = " ".join(cells)
            pad = width * 3 - 1
        ascii_part = "".join(chr(byte) if 0x20 <= byte < 0x7F else "." for byte in chunk)
        lines.append(f"{offset:08x}  {hex_part.ljust(pad)}  |{ascii_part}|")
    if len(data) > len(shown):
        lines.append(f"... {len(data) - len(shown)} more bytes")
    return "\n".join(lines)
