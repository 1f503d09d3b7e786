"""Text helpers: splitting replies into platform-sized pieces."""

from typing import Callable


def utf16_len(text: str) -> int:
    """Length in UTF-16 code units, the unit Telegram counts its limits in."""
    return len(text.encode("utf-16-le")) // 2


def chunk_text(content: str, max_len: int, size: Callable[[str], int] = len) -> list[str]:
    """Split ``content`` into ordered pieces with ``size(piece) <= max_len``.

    Joining the pieces gives back ``content`` exactly. Cuts land after a
    newline or whitespace when one sits in the back half of the window,
    otherwise the window is cut hard. ``size`` must count every character
    as at least one unit.
    """
    if max_len <= 0:
        raise ValueError(f"max_len must be positive, got {max_len}")
    if not content:
        return []
    if size(content) <= max_len:
        return [content]

    chunks: list[str] = []
    start = 0
    while start < len(content):
        end = min(start + max_len, len(content))
        over = size(content[start:end]) - max_len
        while over > 0:
            end -= max(1, over // 2)
            over = size(content[start:end]) - max_len
        # A single character wider than max_len still has to go somewhere
        end = max(end, start + 1)
        if end >= len(content):
            chunks.append(content[start:])
            break

        window = content[start:end]
        half = len(window) // 2
        cut = window.rfind("\n") + 1
        if cut <= half:
            cut = max(window.rfind(" "), window.rfind("\t")) + 1
        if cut <= half:
            cut = len(window)

        chunks.append(content[start:start + cut])
        start += cut
    return chunks
