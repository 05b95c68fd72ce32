from __future__ import annotations


def printable(data: bytes) -> str:
    """Render bytes for the console: 32..126 as-is, everything else as '.'."""
    return "".join(chr(b) if 32 <= b <= 126 else "." for b in data)


def hex_rows(data: bytes, width: int = 16) -> list[str]:
    return [" ".join(f"{b:02x}" for b in data[i : i + width]) for i in range(0, len(data), width)]
