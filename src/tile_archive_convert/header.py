"""
Archive Header and Metadata Codecs

Thin wrappers around the pmtiles byte codecs that add version checks and
translate failures into FormatError.
"""

import gzip
import json
import zlib

from dataclasses import dataclass, asdict, fields
from pmtiles.tile import (Compression, TileType,
                          serialize_header as _serialize_header,
                          deserialize_header as _deserialize_header)

from .errors import FormatError

# Length of a serialized v3 header
HEADER_LEN = 127

# Root directory plus header should fit in a single 16 KiB read
ROOT_BUDGET = 16384 - HEADER_LEN

MAGIC = b"PMTiles"
VERSION = 3


@dataclass
class ArchiveHeader:
    """Fields of a v3 archive header"""
    root_offset: int = 0
    root_length: int = 0
    metadata_offset: int = 0
    metadata_length: int = 0
    leaf_directory_offset: int = 0
    leaf_directory_length: int = 0
    tile_data_offset: int = 0
    tile_data_length: int = 0
    addressed_tiles_count: int = 0
    tile_entries_count: int = 0
    tile_contents_count: int = 0
    clustered: bool = False
    internal_compression: Compression = Compression.UNKNOWN
    tile_compression: Compression = Compression.UNKNOWN
    tile_type: TileType = TileType.UNKNOWN
    min_zoom: int = 0
    max_zoom: int = 0
    min_lon_e7: int = 0
    min_lat_e7: int = 0
    max_lon_e7: int = 0
    max_lat_e7: int = 0
    center_zoom: int = 0
    center_lon_e7: int = 0
    center_lat_e7: int = 0

    def to_dict(self) -> dict:
        """Return the header as the dict consumed by pmtiles.tile"""
        return asdict(self)

    @classmethod
    def from_dict(cls, values: dict) -> "ArchiveHeader":
        """Build a header from a pmtiles.tile header dict, ignoring any keys
           this class does not know about
        """
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in names})


def serialize_header(header: ArchiveHeader) -> bytes:
    """Serialize a header into its fixed-length byte form"""
    return _serialize_header(header.to_dict())


def deserialize_header(buf: bytes) -> ArchiveHeader:
    """Parse a fixed-length v3 header

       Arguments:
       buf (bytes): at least HEADER_LEN bytes from the start of the archive

       Raises FormatError for short input, a foreign magic number, any
       version other than 3 or an unknown compression / tile type tag
    """
    if len(buf) < HEADER_LEN:
        raise FormatError(f"header is {len(buf)} bytes, expected {HEADER_LEN}")
    if buf[0:7] != MAGIC:
        raise FormatError("not a PMTiles archive")
    if buf[7] != VERSION:
        raise FormatError(f"unsupported PMTiles version {buf[7]}")

    try:
        values = _deserialize_header(buf[:HEADER_LEN])
    except ValueError as e:
        raise FormatError(f"invalid header field: {e}") from e

    return ArchiveHeader.from_dict(values)


def serialize_metadata(metadata: dict, compression: Compression) -> bytes:
    """Encode the JSON metadata section

       Arguments:
       metadata (dict):           JSON-like metadata object
       compression (Compression): internal compression of the archive
    """
    raw = json.dumps(metadata).encode("utf-8")
    if compression == Compression.GZIP:
        return gzip.compress(raw, mtime=0)
    if compression == Compression.NONE:
        return raw
    raise FormatError(f"unsupported metadata compression {compression.name}")


def deserialize_metadata(buf: bytes, compression: Compression) -> bytes:
    """Decode the metadata section into raw JSON bytes"""
    if compression == Compression.GZIP:
        try:
            return gzip.decompress(buf)
        except (OSError, EOFError, zlib.error) as e:
            raise FormatError(f"corrupt metadata section: {e}") from e
    if compression == Compression.NONE:
        return buf
    raise FormatError(f"unsupported metadata compression {compression.name}")
