"""
Format Metadata Mapping

Translates the metadata of the legacy sources (MBTiles key/value rows and
PMTiles v2 JSON) into a v3 ArchiveHeader plus the JSON object stored in the
archive's metadata section.
"""

import json

from typing import Tuple
from pmtiles.tile import Compression, TileType

from .errors import FormatError
from .header import ArchiveHeader

E7 = 10_000_000.0

# Tile types whose tiles are never compressed by the archive
RASTER_TYPES = {
    "png": TileType.PNG,
    "jpg": TileType.JPEG,
    "webp": TileType.WEBP,
    "avif": TileType.AVIF,
}

GZIP_MAGIC = b"\x1f\x8b"
PNG_MAGIC = b"\x89PNG"
JPEG_MAGIC = b"\xff\xd8\xff\xe0"


def parse_bounds(bounds: str) -> Tuple[int, int, int, int]:
    """Parse a "west,south,east,north" string into E7 integers

       Returns a (min_lon_e7, min_lat_e7, max_lon_e7, max_lat_e7) tuple
    """
    if not isinstance(bounds, str):
        raise FormatError(f"malformed bounds {bounds!r}")
    parts = bounds.split(",")
    if len(parts) != 4:
        raise FormatError(f"malformed bounds {bounds!r}")
    try:
        min_lon, min_lat, max_lon, max_lat = (float(p.strip()) for p in parts)
    except ValueError as e:
        raise FormatError(f"malformed bounds {bounds!r}") from e
    return (int(min_lon * E7), int(min_lat * E7),
            int(max_lon * E7), int(max_lat * E7))


def parse_center(center: str) -> Tuple[int, int, int]:
    """Parse a "lon,lat,zoom" string

       Returns a (center_lon_e7, center_lat_e7, center_zoom) tuple
    """
    if not isinstance(center, str):
        raise FormatError(f"malformed center {center!r}")
    parts = center.split(",")
    if len(parts) != 3:
        raise FormatError(f"malformed center {center!r}")
    try:
        lon = float(parts[0].strip())
        lat = float(parts[1].strip())
        zoom = int(parts[2].strip())
    except ValueError as e:
        raise FormatError(f"malformed center {center!r}") from e
    return int(lon * E7), int(lat * E7), zoom


def _set_tile_type(header: ArchiveHeader, value: str) -> bool:
    """Set the tile type for a format name, returning False when the name is
       not recognized
    """
    if value == "pbf":
        header.tile_type = TileType.MVT
        return True
    if value in RASTER_TYPES:
        header.tile_type = RASTER_TYPES[value]
        header.tile_compression = Compression.NONE
        return True
    return False


def _lift_json(metadata: dict, value: str) -> None:
    # Nested JSON strings are lifted to the top level to avoid json-in-json.
    # Values that are not a JSON object lift nothing.
    try:
        inside = json.loads(value)
    except (TypeError, ValueError):
        return
    if isinstance(inside, dict):
        metadata.update(inside)


def mbtiles_has_format(rows: list) -> bool:
    """Return whether the MBTiles metadata rows include a format key"""
    return any(name == "format" for name, _ in rows)


def mbtiles_to_header(rows: list) -> Tuple[ArchiveHeader, dict]:
    """Map MBTiles metadata rows to a header and a JSON metadata object

       Arguments:
       rows (list): (name, value) pairs from the metadata table

       Raises FormatError for malformed or zero-area bounds and malformed
       center values
    """
    header = ArchiveHeader()
    result = {}
    bounds_set = False

    for name, value in rows:
        if name == "format":
            _set_tile_type(header, value)
            result["format"] = value
        elif name == "bounds":
            min_lon, min_lat, max_lon, max_lat = parse_bounds(value)
            if min_lon >= max_lon or min_lat >= max_lat:
                raise FormatError("zero-area bounds in MBTiles metadata")
            header.min_lon_e7 = min_lon
            header.min_lat_e7 = min_lat
            header.max_lon_e7 = max_lon
            header.max_lat_e7 = max_lat
            bounds_set = True
        elif name == "center":
            (header.center_lon_e7, header.center_lat_e7,
             header.center_zoom) = parse_center(value)
        elif name == "json":
            _lift_json(result, value)
        elif name == "compression":
            if value == "gzip":
                if header.tile_type == TileType.MVT:
                    header.tile_compression = Compression.GZIP
                else:
                    header.tile_compression = Compression.NONE
            result["compression"] = value
        else:
            # name, attribution, description, type, version, ...
            result[name] = value

    if not bounds_set:
        header.min_lon_e7 = int(-180 * E7)
        header.min_lat_e7 = int(-85 * E7)
        header.max_lon_e7 = int(180 * E7)
        header.max_lat_e7 = int(85 * E7)

    return header, result


def legacy_to_header(metadata: dict, first4: bytes) -> Tuple[ArchiveHeader,
                                                              dict]:
    """Map PMTiles v2 JSON metadata to a header and a JSON metadata object

       Arguments:
       metadata (dict): decoded v2 metadata, consumed keys are removed
       first4 (bytes):  first four bytes of the tile data, used to sniff the
                        tile type and compression when the metadata omits them

       Raises FormatError when the bounds are missing or the compression or
       format is unknown
    """
    header = ArchiveHeader()

    if "bounds" not in metadata:
        raise FormatError("archive is missing bounds")
    (header.min_lon_e7, header.min_lat_e7,
     header.max_lon_e7, header.max_lat_e7) = parse_bounds(
        metadata.pop("bounds"))

    if "center" in metadata:
        (header.center_lon_e7, header.center_lat_e7,
         header.center_zoom) = parse_center(metadata.pop("center"))

    if "compression" in metadata:
        if metadata["compression"] != "gzip":
            raise FormatError(
                f"unknown compression type {metadata['compression']!r}")
        header.tile_compression = Compression.GZIP
    elif first4[:2] == GZIP_MAGIC:
        header.tile_compression = Compression.GZIP

    if "format" in metadata:
        if not _set_tile_type(header, metadata["format"]):
            raise FormatError(f"unknown tile type {metadata['format']!r}")
    elif first4 == PNG_MAGIC:
        header.tile_type = TileType.PNG
        header.tile_compression = Compression.NONE
    elif first4 == JPEG_MAGIC:
        header.tile_type = TileType.JPEG
        header.tile_compression = Compression.NONE
    else:
        # Anything else is assumed to be a vector tile
        header.tile_type = TileType.MVT

    if "json" in metadata:
        _lift_json(metadata, metadata.pop("json"))

    return header, metadata
