# relaybot/message_chunks.py
from typing import List

MAX_MESSAGE_LENGTH = 19000
CHUNKED_METHODS = frozenset({
    "im.message.add",
    "imbot.message.add",
    "im.notify.add",
    "imbot.notify.add",
})

# worst case footer, "(9999/9999)"
_FOOTER_RESERVE = len("\n\n--- Message continues (9999/9999) ---")


def _footer(index: int, total: int) -> str:
    return f"\n\n--- Message continues ({index}/{total}) ---"


def _split_piece(text: str, limit: int) -> List[str]:
    # last resort for a single line or word longer than the limit
    return [text[i:i + limit] for i in range(0, len(text), limit)]


def _pack(parts: List[str], sep: str, limit: int) -> List[str]:
    chunks: List[str] = []
    current = None
    for part in parts:
        candidate = part if current is None else current + sep + part
        if len(candidate) <= limit:
            current = candidate
            continue
        if current is not None:
            chunks.append(current)
        current = part
    if current is not None:
        chunks.append(current)
    return chunks


def chunk_message(message: str, max_length: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """
    Split a chat message that is too long for a single platform call.

    Splits on line boundaries first, then on spaces, then hard at the limit.
    Every chunk but the last gets a "Message continues (i/n)" footer; chunks
    including their footer never exceed max_length.
    """
    if not message or len(message) <= max_length:
        return [message]

    limit = max_length - _FOOTER_RESERVE
    if limit < 1:
        raise ValueError("max_length is too small to hold a continuation footer")

    pieces: List[str] = []
    for line_chunk in _pack(message.split("\n"), "\n", limit):
        if len(line_chunk) <= limit:
            pieces.append(line_chunk)
            continue
        for word_chunk in _pack(line_chunk.split(" "), " ", limit):
            if len(word_chunk) <= limit:
                pieces.append(word_chunk)
            else:
                pieces.extend(_split_piece(word_chunk, limit))

    total = len(pieces)
    if total == 1:
        return pieces
    return [
        piece + _footer(i + 1, total) if i < total - 1 else piece
        for i, piece in enumerate(pieces)
    ]


def needs_chunking(method: str, params: dict, max_length: int = MAX_MESSAGE_LENGTH) -> bool:
    if method not in CHUNKED_METHODS:
        return False
    message = params.get("MESSAGE")
    return isinstance(message, str) and len(message) > max_length
