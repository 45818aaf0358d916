from __future__ import annotations

import io
from collections.abc import Iterable
from typing import Any, BinaryIO, Protocol

DEFAULT_CHUNK_SIZE = 64 * 1024


class Accumulator(Protocol):
    def update(self, data: bytes, /) -> None: ...


class ByteCounter:
    def __init__(self) -> None:
        self.count = 0

    def update(self, data: bytes) -> None:
        self.count += len(data)


class ChainedReader(io.RawIOBase):
    """Read several binary streams back to back as one stream.

    ``readinto`` keeps pulling from the current source until the buffer is
    full or every source is exhausted, so consumers that treat a short read
    as end of input (record-oriented decoders) see the same framing they
    would on one contiguous file.
    """

    def __init__(self, *sources: Any) -> None:
        super().__init__()
        self._sources = list(sources)
        self._index = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        view = memoryview(buffer).cast("B")
        filled = 0
        while filled < len(view) and self._index < len(self._sources):
            chunk = self._sources[self._index].read(len(view) - filled)
            if not chunk:
                self._index += 1
                continue
            view[filled : filled + len(chunk)] = chunk
            filled += len(chunk)
        return filled


class ObservingReader(io.RawIOBase):
    """Forward reads to ``inner`` and feed every byte read to the accumulators."""

    def __init__(self, inner: Any, accumulators: Iterable[Accumulator]) -> None:
        super().__init__()
        self._inner = inner
        self._accumulators = list(accumulators)

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        view = memoryview(buffer).cast("B")
        filled = 0
        while filled < len(view):
            chunk = self._inner.read(len(view) - filled)
            if not chunk:
                break
            view[filled : filled + len(chunk)] = chunk
            filled += len(chunk)
        if filled:
            data = bytes(view[:filled])
            for acc in self._accumulators:
                acc.update(data)
        return filled


class DiscardSink(io.RawIOBase):
    def writable(self) -> bool:
        return True

    def write(self, data: Any) -> int:
        return len(data)


class ObservingWriter(io.RawIOBase):
    """Feed every written byte range to the accumulators, then pass it to ``inner``."""

    def __init__(self, inner: Any, accumulators: Iterable[Accumulator]) -> None:
        super().__init__()
        self._inner = inner
        self._accumulators = list(accumulators)

    def writable(self) -> bool:
        return True

    def write(self, data: Any) -> int:
        chunk = bytes(data)
        for acc in self._accumulators:
            acc.update(chunk)
        self._inner.write(chunk)
        return len(chunk)


def copy_stream(source: Any, destination: BinaryIO | Any, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    copied = 0
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            return copied
        destination.write(chunk)
        copied += len(chunk)
