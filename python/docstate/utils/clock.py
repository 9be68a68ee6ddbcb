import time

_last = 0.0


def now() -> float:
    """
    Wall-clock timestamp that never repeats within the process.

    Change detection compares `last_modified > since`; two edits landing in the
    same clock tick must still be ordered.
    """
    global _last
    current = time.time()
    if current <= _last:
        current = _last + 1e-6
    _last = current
    return current
