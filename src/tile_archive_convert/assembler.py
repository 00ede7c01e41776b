"""
Archive Assembler

Writes the final archive from a drained Resolver and the content spool that
holds the tile bytes it produced.

Section order: header, root directory, metadata, leaf directories, tile data.
"""

import shutil

from typing import BinaryIO
from pmtiles.tile import Compression, TileType, tileid_to_zxy

from .errors import ArchiveIOError, EmptyInputError
from .header import (HEADER_LEN, ROOT_BUDGET, ArchiveHeader,
                     serialize_header, serialize_metadata)
from .directory import optimize_directories
from .resolver import Resolver


def set_zoom_center_defaults(header: ArchiveHeader, entries: list) -> None:
    """Set the zoom range from the first and last entries and, when no
       center was given, center the archive on its bounds at the minimum zoom
    """
    header.min_zoom = tileid_to_zxy(entries[0].tile_id)[0]
    header.max_zoom = tileid_to_zxy(entries[-1].tile_id)[0]

    if (header.center_zoom == 0 and header.center_lon_e7 == 0
            and header.center_lat_e7 == 0):
        header.center_zoom = header.min_zoom
        header.center_lon_e7 = int((header.min_lon_e7 + header.max_lon_e7) / 2)
        header.center_lat_e7 = int((header.min_lat_e7 + header.max_lat_e7) / 2)


def _print_stats(resolver: Resolver, root_bytes: bytes, leaves_bytes: bytes,
                 num_leaves: int) -> None:
    print(f"  Addressed tiles: {resolver.addressed_tiles}")
    print(f"  Tile entries (after RLE): {len(resolver.entries)}")
    print(f"  Tile contents: {resolver.distinct_content_count()}")

    dir_bytes = len(root_bytes) + len(leaves_bytes)
    if num_leaves > 0:
        print(f"  Root dir bytes: {len(root_bytes)}")
        print(f"  Leaves dir bytes: {len(leaves_bytes)}")
        print(f"  Num leaf dirs: {num_leaves}")
        print(f"  Average leaf dir bytes: {len(leaves_bytes) // num_leaves}")
    print(f"  Total dir bytes: {dir_bytes}")
    print(f"  Average bytes per addressed tile: "
          f"{dir_bytes / resolver.addressed_tiles:.2f}")


def finalize(resolver: Resolver, header: ArchiveHeader, spool: BinaryIO,
             output_path: str, metadata: dict,
             root_budget: int = ROOT_BUDGET) -> ArchiveHeader:
    """Assemble the archive

       Arguments:
       resolver (Resolver):     resolver holding every entry of the archive
       header (ArchiveHeader):  header with bounds, center and tile type set
       spool (BinaryIO):        file holding the bytes the resolver marked as
                                new, in order. closed once copied.
       output_path (str):       path of the archive to write
       metadata (dict):         JSON metadata of the archive
       root_budget (int):       size budget of the root directory. defaults
                                to ROOT_BUDGET.

       Returns the completed header
    """
    if not resolver.entries:
        spool.close()
        raise EmptyInputError("no tiles to write")

    header.addressed_tiles_count = resolver.addressed_tiles
    header.tile_entries_count = len(resolver.entries)
    header.tile_contents_count = resolver.distinct_content_count()

    root_bytes, leaves_bytes, num_leaves = optimize_directories(
        resolver.entries, root_budget, Compression.GZIP)
    _print_stats(resolver, root_bytes, leaves_bytes, num_leaves)

    metadata_bytes = serialize_metadata(metadata, Compression.GZIP)

    set_zoom_center_defaults(header, resolver.entries)

    header.clustered = True
    header.internal_compression = Compression.GZIP
    if header.tile_type == TileType.MVT:
        header.tile_compression = Compression.GZIP

    header.root_offset = HEADER_LEN
    header.root_length = len(root_bytes)
    header.metadata_offset = header.root_offset + header.root_length
    header.metadata_length = len(metadata_bytes)
    header.leaf_directory_offset = (header.metadata_offset
                                    + header.metadata_length)
    header.leaf_directory_length = len(leaves_bytes)
    header.tile_data_offset = (header.leaf_directory_offset
                               + header.leaf_directory_length)
    header.tile_data_length = resolver.offset

    header_bytes = serialize_header(header)

    try:
        with open(output_path, "wb") as out:
            out.write(header_bytes)
            out.write(root_bytes)
            out.write(metadata_bytes)
            out.write(leaves_bytes)
            spool.seek(0)
            shutil.copyfileobj(spool, out)
    except OSError as e:
        raise ArchiveIOError(f"failed to write {output_path}: {e}") from e
    finally:
        spool.close()

    return header
