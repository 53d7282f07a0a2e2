import zipfile
from typing import Iterable, Iterator

READ_BLOCK_BYTES = 64 * 1024


class _StreamBuffer:
    """
    Write-only sink handed to ``ZipFile``.

    It has no ``tell``/``seek`` so zipfile writes in streaming mode (data
    descriptors after each member) and we can drain bytes as they appear.
    """

    def __init__(self):
        self._chunks: list[bytes] = []

    def write(self, data: bytes) -> int:
        if data:
            self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


def iter_zip(
    entries: Iterable[tuple[str, str]],
    block_size: int = READ_BLOCK_BYTES,
) -> Iterator[bytes]:
    """
    Yield a deflate-compressed ZIP of ``(path, arcname)`` entries without
    holding more than one read block of any member in memory.
    """
    sink = _StreamBuffer()
    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path, arcname in entries:
            with open(path, "rb") as src, archive.open(arcname, mode="w") as dst:
                while True:
                    block = src.read(block_size)
                    if not block:
                        break
                    dst.write(block)
                    data = sink.drain()
                    if data:
                        yield data
            data = sink.drain()
            if data:
                yield data

    data = sink.drain()
    if data:
        yield data
