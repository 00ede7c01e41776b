"""
Tests for the PMTiles v2 reader and upgrader
"""

import gzip
import json

import pytest

from pmtiles.tile import Compression, TileType, zxy_to_tileid

from conftest import read_archive, read_tiles
from tile_archive_convert.errors import FormatError
from tile_archive_convert.legacy import parse_directory, parse_header
from tile_archive_convert.pmtiles_upgrade import PMTilesUpgrader


class TestLegacyReader:
    """Test cases for the v2 header and directory parser"""

    def test_parse_directory(self):
        """Test tile and leaf records"""
        tile = (bytes([3]) + (5).to_bytes(3, "little") + (6).to_bytes(3, "little")
                + (1000).to_bytes(6, "little") + (20).to_bytes(4, "little"))
        leaf = (bytes([0x80 | 7]) + bytes(6) + (2000).to_bytes(6, "little")
                + (34).to_bytes(4, "little"))
        directory = parse_directory(tile + leaf)

        assert directory.entries == {(3, 5, 6): (1000, 20)}
        assert directory.leaves == {(7, 0, 0): (2000, 34)}

    def test_parse_header(self):
        """Test metadata and root directory parsing"""
        meta = json.dumps({"name": "x"}).encode()
        buf = (b"PM" + (2).to_bytes(2, "little")
               + len(meta).to_bytes(4, "little") + (0).to_bytes(2, "little")
               + meta)
        metadata, root = parse_header(buf)
        assert metadata == {"name": "x"}
        assert root.entries == {}

    def test_bad_magic(self):
        """Test that other files are rejected"""
        with pytest.raises(FormatError):
            parse_header(b"XX" + bytes(20))


class TestPMTilesUpgrader:
    """Test cases for PMTilesUpgrader"""

    def test_upgrade_with_leaves(self, make_legacy_archive, tmp_path):
        """Test that root and leaf tiles all land in the new archive"""
        root_tiles = {(0, 0, 0): b"\x89PNG-zero", (1, 1, 0): b"\x89PNG-a"}
        leaf_tiles = {(2, 3, 3): b"\x89PNG-b", (2, 0, 0): b"\x89PNG-a"}
        path = make_legacy_archive(root_tiles, leaf_tiles,
                                   {"bounds": "-10,-10,10,10",
                                    "format": "png", "name": "old"})
        out = tmp_path / "new.pmtiles"
        header = PMTilesUpgrader(str(path), str(out)).convert()

        assert header.tile_type == TileType.PNG
        assert header.addressed_tiles_count == 4
        assert header.tile_contents_count == 3

        stored = read_tiles(out)
        for (z, x, y), data in {**root_tiles, **leaf_tiles}.items():
            assert stored[zxy_to_tileid(z, x, y)] == data

        _, entries = read_archive(out)
        ids = [e.tile_id for e in entries]
        assert ids == sorted(ids)

    def test_vector_tiles_recompressed(self, make_legacy_archive, tmp_path):
        """Test that uncompressed vector tiles are gzipped"""
        path = make_legacy_archive({(0, 0, 0): b"vector"},
                                   metadata={"bounds": "-1,-1,1,1",
                                             "format": "pbf"})
        out = tmp_path / "new.pmtiles"
        header = PMTilesUpgrader(str(path), str(out)).convert()

        assert header.tile_compression == Compression.GZIP
        assert gzip.decompress(read_tiles(out)[0]) == b"vector"

    def test_empty_tiles_skipped(self, make_legacy_archive, tmp_path):
        """Test that zero-length entries are not addressed"""
        path = make_legacy_archive({(0, 0, 0): b"", (1, 0, 0): b"\x89PNG"})
        out = tmp_path / "new.pmtiles"
        header = PMTilesUpgrader(str(path), str(out)).convert()
        assert header.addressed_tiles_count == 1

    def test_already_v3(self, make_legacy_archive, tmp_path):
        """Test that a version 3 archive is not upgraded again"""
        path = make_legacy_archive({(0, 0, 0): b"\x89PNG"})
        first = tmp_path / "first.pmtiles"
        PMTilesUpgrader(str(path), str(first)).convert()

        with pytest.raises(FormatError, match="already"):
            PMTilesUpgrader(str(first),
                            str(tmp_path / "second.pmtiles")).convert()

    def test_missing_bounds(self, make_legacy_archive, tmp_path):
        """Test that v2 archives without bounds are rejected"""
        path = make_legacy_archive({(0, 0, 0): b"\x89PNG"},
                                   metadata={"format": "png"})
        with pytest.raises(FormatError, match="bounds"):
            PMTilesUpgrader(str(path), str(tmp_path / "new.pmtiles")).convert()
