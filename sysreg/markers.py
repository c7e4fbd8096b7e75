"""
Marker strings emitted by the guest on its debug console, and the rules for
cutting the console stream into chunks.
"""

from enum import Enum
from typing import Callable, Optional

CHUNK_CAPACITY = 512

# Kernel debugger prompts. None of these are terminated by a newline.
DEBUGGER_PROMPT = "kdb:>"
PAGER_PROMPT = "--- Press q"
ASSERT_PROMPT = "Break repea"

PROMPTS = (DEBUGGER_PROMPT, PAGER_PROMPT, ASSERT_PROMPT)

RAW_MODE_MARKER = "KDSERIAL"
FAILURE_MARKER = "SYSREG_ROSAUTOTEST_FAILURE"


class Marker(Enum):
    RAW_MODE = "raw-mode"
    DEBUGGER = "debugger"
    PAGER = "pager"
    ASSERT = "assert"
    FAILURE = "failure"
    CHECKPOINT = "checkpoint"


def is_chunk_boundary(buffer: str, capacity: int = CHUNK_CAPACITY) -> bool:
    """Check whether the accumulated buffer should be handed out as a chunk."""
    if buffer.endswith("\n"):
        return True
    # A prompt can only become visible through the character just appended,
    # so testing the suffix finds it as soon as it is complete.
    if buffer.endswith(PROMPTS):
        return True
    return len(buffer) >= capacity


def read_chunk(read_char: Callable[[], Optional[str]], capacity: int = CHUNK_CAPACITY) -> Optional[str]:
    """
    Accumulate characters from read_char() until a chunk boundary.

    read_char returns the next character, or None once the stream is over.
    A partial chunk is returned as-is when the stream ends; None means there
    was nothing left to read at all.
    """
    buffer = ""
    while True:
        char = read_char()
        if char is None:
            return buffer or None
        buffer += char
        if is_chunk_boundary(buffer, capacity):
            return buffer


def classify(chunk: str, checkpoint: str) -> Optional[Marker]:
    """Return the highest priority marker found in chunk, if any."""
    if RAW_MODE_MARKER in chunk:
        return Marker.RAW_MODE
    if DEBUGGER_PROMPT in chunk:
        return Marker.DEBUGGER
    if PAGER_PROMPT in chunk:
        return Marker.PAGER
    if ASSERT_PROMPT in chunk:
        return Marker.ASSERT
    # Failure must win over a checkpoint printed on the same line
    if FAILURE_MARKER in chunk:
        return Marker.FAILURE
    if checkpoint and checkpoint in chunk:
        return Marker.CHECKPOINT
    return None
