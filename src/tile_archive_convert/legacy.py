"""
PMTiles v2 Reader

Parses the header and the (possibly nested) directories of a version 2
archive into flat tile entries addressed by v3 tile IDs.

A v2 archive starts with "PM", a u16 version, a u32 JSON metadata length and
a u16 count of root directory entries, followed by the JSON metadata and the
root directory. Directory entries are 17 bytes: u8 zoom (high bit set for a
leaf directory pointer), u24 x, u24 y, u48 offset and u32 length, all little
endian.
"""

import json
import struct

from dataclasses import dataclass, field
from typing import BinaryIO, Dict, List, Tuple
from pmtiles.tile import Entry, zxy_to_tileid

from .errors import ArchiveIOError, FormatError

MAGIC = b"PM"
HEADER_STRUCT = struct.Struct("<2sHIH")
ENTRY_LEN = 17

# Key of a v2 directory record
Zxy = Tuple[int, int, int]


@dataclass
class LegacyDirectory:
    """Tile and leaf records of one v2 directory, keyed by (z, x, y) and
       holding (offset, length) ranges
    """
    entries: Dict[Zxy, Tuple[int, int]] = field(default_factory=dict)
    leaves: Dict[Zxy, Tuple[int, int]] = field(default_factory=dict)


def parse_directory(buf: bytes) -> LegacyDirectory:
    """Parse a block of 17-byte v2 directory records"""
    directory = LegacyDirectory()
    for i in range(len(buf) // ENTRY_LEN):
        rec = buf[i * ENTRY_LEN:(i + 1) * ENTRY_LEN]
        z_raw = rec[0]
        x = int.from_bytes(rec[1:4], "little")
        y = int.from_bytes(rec[4:7], "little")
        offset = int.from_bytes(rec[7:13], "little")
        length = int.from_bytes(rec[13:17], "little")
        if z_raw & 0x80:
            directory.leaves[(z_raw & 0x7F, x, y)] = (offset, length)
        else:
            directory.entries[(z_raw, x, y)] = (offset, length)
    return directory


def parse_header(buf: bytes) -> Tuple[dict, LegacyDirectory]:
    """Parse the v2 header, metadata and root directory

       Arguments:
       buf (bytes): leading bytes of the archive, large enough to hold the
                    metadata and root directory

       Returns a (dict, LegacyDirectory) tuple of the decoded JSON metadata
       and the root directory
    """
    if len(buf) < HEADER_STRUCT.size:
        raise FormatError("archive is too short for a PMTiles v2 header")
    magic, _version, metadata_len, root_count = HEADER_STRUCT.unpack_from(buf)
    if magic != MAGIC:
        raise FormatError("not a PMTiles archive")

    start = HEADER_STRUCT.size
    root_start = start + metadata_len
    root_end = root_start + root_count * ENTRY_LEN
    if root_end > len(buf):
        raise FormatError("truncated PMTiles v2 header")

    try:
        metadata = json.loads(buf[start:root_start]) if metadata_len else {}
    except ValueError as e:
        raise FormatError(f"invalid v2 metadata: {e}") from e
    if not isinstance(metadata, dict):
        raise FormatError("v2 metadata is not a JSON object")

    return metadata, parse_directory(buf[root_start:root_end])


def _read_at(f: BinaryIO, offset: int, length: int) -> bytes:
    try:
        f.seek(offset)
        data = f.read(length)
    except OSError as e:
        raise ArchiveIOError(f"failed to read {length} bytes at offset "
                             f"{offset}: {e}") from e
    if len(data) != length:
        raise FormatError(f"archive truncated at offset {offset}")
    return data


def collect_entries(directory: LegacyDirectory, f: BinaryIO,
                    entries: List[Entry]) -> None:
    """Append the tiles of a directory and all of its leaves to entries

       Arguments:
       directory (LegacyDirectory): parsed directory
       f (BinaryIO):                open archive, used to read leaf blocks
       entries (list):              receives one run-length 1 Entry per tile
    """
    for (z, x, y), (offset, length) in directory.entries.items():
        entries.append(Entry(zxy_to_tileid(z, x, y), offset, length, 1))

    # Several leaf records may point at the same block
    unique = {offset: length for offset, length in directory.leaves.values()}
    for offset, length in unique.items():
        leaf = parse_directory(_read_at(f, offset, length))
        collect_entries(leaf, f, entries)
