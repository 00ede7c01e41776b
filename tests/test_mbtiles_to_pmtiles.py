"""
Tests for the MBTiles converter
"""

import gzip
import json

import pytest

from pmtiles.tile import Compression, TileType, zxy_to_tileid

from conftest import read_archive, read_tiles
from tile_archive_convert.errors import DataIntegrityError, EmptyInputError
from tile_archive_convert.header import deserialize_metadata
from tile_archive_convert.mbtiles_to_pmtiles import (MBTilesConverter,
                                                     MBTilesReader, flip_row)


class TestMBTilesReader:
    """Test cases for MBTilesReader"""

    def test_reads_rows(self, make_mbtiles):
        """Test metadata, keys and tile data access"""
        path = make_mbtiles({(1, 0, 1): b"tile"}, {"format": "png"})
        with MBTilesReader(str(path)) as reader:
            assert reader.metadata() == [("format", "png")]
            assert list(reader.tile_keys()) == [(1, 0, 1)]
            assert reader.tile_data(1, 0, 1) == b"tile"
            assert reader.tile_data(1, 1, 1) is None

    def test_null_metadata_values(self, make_mbtiles, tmp_path):
        """Test that NULL metadata values are read as empty strings"""
        path = make_mbtiles({(0, 0, 0): b"tile"},
                            {"format": "png", "bounds": "-10,-10,10,10",
                             "description": None, "json": None})
        with MBTilesReader(str(path)) as reader:
            assert dict(reader.metadata())["description"] == ""

        out = tmp_path / "out.pmtiles"
        header = MBTilesConverter(str(path), str(out)).convert()

        with open(out, "rb") as f:
            f.seek(header.metadata_offset)
            raw = f.read(header.metadata_length)
        assert json.loads(deserialize_metadata(
            raw, header.internal_compression)) == {"format": "png",
                                                   "description": ""}


class TestMBTilesConverter:
    """Test cases for MBTilesConverter"""

    def test_flip_row(self):
        """Test conversion of TMS rows"""
        assert flip_row(2, 1) == 2
        assert flip_row(0, 0) == 0
        assert flip_row(3, 0) == 7

    def test_row_is_flipped(self, make_mbtiles, tmp_path):
        """Test that row 1 at zoom 2 is stored as y = 2"""
        path = make_mbtiles({(2, 1, 1): b"tile"})
        out = tmp_path / "out.pmtiles"
        MBTilesConverter(str(path), str(out)).convert()

        _, entries = read_archive(out)
        assert [e.tile_id for e in entries] == [zxy_to_tileid(2, 1, 2)]

    def test_tiles_and_header(self, make_mbtiles, tmp_path):
        """Test a raster conversion with repeated contents"""
        tiles = {(0, 0, 0): b"world", (1, 0, 0): b"sea", (1, 1, 0): b"sea",
                 (1, 0, 1): b"land", (1, 1, 1): b"sea"}
        path = make_mbtiles(tiles, {"format": "png", "name": "test",
                                    "bounds": "-10,-10,10,10"})
        out = tmp_path / "out.pmtiles"
        header = MBTilesConverter(str(path), str(out)).convert()

        assert header.tile_type == TileType.PNG
        assert header.tile_compression == Compression.NONE
        assert header.addressed_tiles_count == 5
        assert header.tile_contents_count == 3
        assert (header.min_zoom, header.max_zoom) == (0, 1)

        stored = read_tiles(out)
        for (z, x, row), data in tiles.items():
            assert stored[zxy_to_tileid(z, x, flip_row(z, row))] == data

    def test_vector_tiles_compressed(self, make_mbtiles, tmp_path):
        """Test that plain vector tiles are gzipped and gzipped ones kept"""
        already = gzip.compress(b"second")
        path = make_mbtiles({(1, 0, 0): b"first", (1, 1, 1): already},
                            {"format": "pbf"})
        out = tmp_path / "out.pmtiles"
        header = MBTilesConverter(str(path), str(out)).convert()

        assert header.tile_compression == Compression.GZIP
        stored = read_tiles(out)
        assert gzip.decompress(stored[zxy_to_tileid(1, 0, 1)]) == b"first"
        assert stored[zxy_to_tileid(1, 1, 0)] == already

    def test_empty_tiles_skipped(self, make_mbtiles, tmp_path):
        """Test that zero-length tiles are not addressed"""
        path = make_mbtiles({(1, 0, 0): b"", (1, 1, 0): b"data"})
        out = tmp_path / "out.pmtiles"
        header = MBTilesConverter(str(path), str(out)).convert()

        assert header.addressed_tiles_count == 1

    def test_no_deduplication(self, make_mbtiles, tmp_path):
        """Test that every tile is stored when deduplication is off"""
        path = make_mbtiles({(1, 0, 0): b"same", (1, 1, 1): b"same"})
        out = tmp_path / "out.pmtiles"
        header = MBTilesConverter(str(path), str(out),
                                  deduplicate=False).convert()

        assert header.tile_contents_count == 2
        assert header.tile_data_length == 8

    def test_empty_archive(self, make_mbtiles, tmp_path):
        """Test that an archive without tiles fails before any output"""
        path = make_mbtiles({})
        out = tmp_path / "out.pmtiles"
        with pytest.raises(EmptyInputError):
            MBTilesConverter(str(path), str(out)).convert()
        assert not out.exists()

    def test_missing_row(self, make_mbtiles, tmp_path, monkeypatch):
        """Test that a tile vanishing between passes is reported"""
        path = make_mbtiles({(0, 0, 0): b"tile"})
        monkeypatch.setattr(MBTilesReader, "tile_data",
                            lambda self, z, x, y: None)
        with pytest.raises(DataIntegrityError, match="missing row"):
            MBTilesConverter(str(path), str(tmp_path / "out.pmtiles")).convert()

    def test_missing_format_warning(self, make_mbtiles, tmp_path, capsys):
        """Test the warning printed when the format is unknown"""
        path = make_mbtiles({(0, 0, 0): b"tile"}, {"name": "x"})
        MBTilesConverter(str(path), str(tmp_path / "out.pmtiles")).convert()
        assert "missing format" in capsys.readouterr().out
