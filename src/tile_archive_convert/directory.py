"""
Directory Helpers

Builds the root and leaf directories of an archive and walks them back into
tile entries.
"""

import io
import zlib

from typing import Callable, Iterator, List, Tuple
from pmtiles.tile import (Compression, Entry, TileType,
                          deserialize_directory, read_varint)
from pmtiles.writer import optimize_directories as _optimize_directories

from .errors import FormatError
from .header import ArchiveHeader

EXTENSIONS = {
    TileType.MVT: ".mvt",
    TileType.PNG: ".png",
    TileType.JPEG: ".jpg",
    TileType.WEBP: ".webp",
    TileType.AVIF: ".avif",
}


def tile_extension(tile_type: TileType) -> str:
    """Return the file extension for a tile type, or an empty string when
       the type is unknown
    """
    return EXTENSIONS.get(tile_type, "")


def optimize_directories(entries: List[Entry], max_root_bytes: int,
                         compression: Compression) -> Tuple[bytes, bytes,
                                                            int]:
    """Split entries into a root directory and leaf directories

       Arguments:
       entries (list):            tile entries sorted by tile ID
       max_root_bytes (int):      size budget of the serialized root directory
       compression (Compression): internal compression of the archive

       Returns a (bytes, bytes, int) tuple of the root directory, the
       concatenated leaf directories and the number of leaves
    """
    # Directories are always serialized with gzip
    if compression != Compression.GZIP:
        raise FormatError("unsupported directory compression "
                          f"{compression.name}")
    return _optimize_directories(entries, max_root_bytes)


def _decode_entries(raw: bytes) -> List[Entry]:
    # Same layout as pmtiles.tile.deserialize_directory, minus the gzip layer
    b_io = io.BytesIO(raw)
    num_entries = read_varint(b_io)

    entries = []
    last_id = 0
    for _ in range(num_entries):
        last_id += read_varint(b_io)
        entries.append(Entry(last_id, 0, 0, 0))
    for entry in entries:
        entry.run_length = read_varint(b_io)
    for entry in entries:
        entry.length = read_varint(b_io)
    for i, entry in enumerate(entries):
        value = read_varint(b_io)
        if i > 0 and value == 0:
            entry.offset = entries[i - 1].offset + entries[i - 1].length
        else:
            entry.offset = value - 1
    return entries


def _read_directory(buf: bytes, compression: Compression) -> List[Entry]:
    try:
        if compression == Compression.GZIP:
            return deserialize_directory(buf)
        return _decode_entries(buf)
    except (OSError, EOFError, zlib.error) as e:
        raise FormatError(f"corrupt directory: {e}") from e


def iterate_entries(header: ArchiveHeader,
                    get_bytes: Callable[[int, int], bytes]) -> Iterator[Entry]:
    """Yield every tile entry of an archive in stored order

       Arguments:
       header (ArchiveHeader): header of the archive
       get_bytes (callable):   reads (offset, length) bytes from the archive

       Leaf pointers (entries with a zero run length) are followed into the
       leaf directory section and never yielded themselves. Directories may
       be gzipped or uncompressed.
    """
    compression = header.internal_compression
    if compression not in (Compression.GZIP, Compression.NONE):
        raise FormatError(f"unsupported directory compression "
                          f"{compression.name}")

    def walk(offset: int, length: int) -> Iterator[Entry]:
        for entry in _read_directory(get_bytes(offset, length), compression):
            if entry.run_length > 0:
                yield entry
            else:
                yield from walk(header.leaf_directory_offset + entry.offset,
                                entry.length)

    yield from walk(header.root_offset, header.root_length)
