"""Helper functions for chunking iterables."""
from collections.abc import Iterable, Iterator
from itertools import islice


def chunked(iterable: Iterable, size: int) -> Iterator[list]:
    """Yield successive lists of at most ``size`` items, preserving order."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    iterator = iter(iterable)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk
