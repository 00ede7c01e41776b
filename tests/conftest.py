"""
Shared fixtures for building source archives and reading results back
"""

import json
import sqlite3
import struct

import pytest

from tile_archive_convert.directory import iterate_entries
from tile_archive_convert.header import HEADER_LEN, deserialize_header

LEGACY_TILE_DATA_START = 512000


def _legacy_record(z, x, y, offset, length, leaf=False):
    z_raw = z | 0x80 if leaf else z
    return (bytes([z_raw]) + x.to_bytes(3, "little") + y.to_bytes(3, "little")
            + offset.to_bytes(6, "little") + length.to_bytes(4, "little"))


@pytest.fixture
def make_mbtiles(tmp_path):
    """Factory writing an MBTiles archive from metadata and
       {(zoom, column, tms_row): data} tiles
    """
    def make(tiles, metadata=None, name="source.mbtiles"):
        path = tmp_path / name
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE metadata (name TEXT, value TEXT)")
        conn.execute("""CREATE TABLE tiles (zoom_level INTEGER,
                        tile_column INTEGER, tile_row INTEGER,
                        tile_data BLOB)""")
        if metadata is None:
            metadata = {"format": "png", "bounds": "-10,-10,10,10"}
        conn.executemany("INSERT INTO metadata (name, value) VALUES (?, ?)",
                         list(metadata.items()))
        conn.executemany(
            """INSERT INTO tiles (zoom_level, tile_column, tile_row,
               tile_data) VALUES (?, ?, ?, ?)""",
            [(z, x, y, data) for (z, x, y), data in tiles.items()])
        conn.commit()
        conn.close()
        return path

    return make


@pytest.fixture
def make_legacy_archive(tmp_path):
    """Factory writing a PMTiles v2 archive

       root_tiles and leaf_tiles map (z, x, y) to data. When leaf_tiles is
       given they are stored in a leaf directory referenced from the root.
    """
    def make(root_tiles, leaf_tiles=None, metadata=None, name="old.pmtiles"):
        if metadata is None:
            metadata = {"bounds": "-10,-10,10,10", "format": "png"}

        data = bytearray()
        root = bytearray()
        leaf = bytearray()
        offset = LEGACY_TILE_DATA_START
        for (z, x, y), tile in root_tiles.items():
            root += _legacy_record(z, x, y, offset, len(tile))
            data += tile
            offset += len(tile)
        for (z, x, y), tile in (leaf_tiles or {}).items():
            leaf += _legacy_record(z, x, y, offset, len(tile))
            data += tile
            offset += len(tile)
        if leaf_tiles:
            leaf_z = min(z for z, _, _ in leaf_tiles)
            root += _legacy_record(leaf_z, 0, 0, offset, len(leaf), leaf=True)

        meta_bytes = json.dumps(metadata).encode()
        head = (struct.pack("<2sHIH", b"PM", 2, len(meta_bytes),
                            len(root) // 17) + meta_bytes + bytes(root))
        assert len(head) <= LEGACY_TILE_DATA_START

        path = tmp_path / name
        path.write_bytes(head.ljust(LEGACY_TILE_DATA_START, b"\0")
                         + bytes(data) + bytes(leaf))
        return path

    return make


def read_archive(path):
    """Return the header and the entry list of a v3 archive"""
    with open(path, "rb") as f:
        header = deserialize_header(f.read(HEADER_LEN))

        def get_bytes(offset, length):
            f.seek(offset)
            return f.read(length)

        entries = list(iterate_entries(header, get_bytes))
    return header, entries


def read_tiles(path):
    """Return {tile_id: stored bytes} for every addressed tile of a v3
       archive
    """
    header, entries = read_archive(path)
    tiles = {}
    with open(path, "rb") as f:
        for entry in entries:
            f.seek(header.tile_data_offset + entry.offset)
            data = f.read(entry.length)
            for i in range(entry.run_length):
                tiles[entry.tile_id + i] = data
    return tiles
