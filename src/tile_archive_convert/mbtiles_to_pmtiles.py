#!/usr/bin/env python3
"""
MBTiles to PMTiles Converter

This script converts an MBTiles archive into a PMTiles (version 3) archive.

Tiles are read in two passes. The first pass collects the sorted set of
tile IDs so that the second pass can feed the tiles to the resolver in
tile ID order, which the archive directories require.
"""

import os
import sys
import time
import click
import sqlite3
import tempfile

from tqdm import tqdm
from pathlib import Path
from datetime import timedelta
from typing import BinaryIO, Iterator, List, Optional, Tuple
from pmtiles.tile import TileType, tileid_to_zxy, zxy_to_tileid

from .assembler import finalize
from .errors import (ArchiveIOError, ConversionError, DataIntegrityError,
                     EmptyInputError)
from .header import ArchiveHeader
from .metadata import mbtiles_has_format, mbtiles_to_header
from .resolver import Resolver


class MBTilesReader:
    """Read-only access to the metadata and tiles of an MBTiles archive"""

    def __init__(self, mbtiles_path: str) -> None:
        """Open the archive

           Arguments:
           mbtiles_path (str): path to the MBTiles archive
        """
        self.mbtiles_path = mbtiles_path
        uri = Path(mbtiles_path).resolve().as_uri() + "?mode=ro"
        try:
            self.conn = sqlite3.connect(uri, uri=True)
        except sqlite3.Error as e:
            raise ArchiveIOError(f"failed to open {mbtiles_path}: {e}") from e

    def __enter__(self) -> "MBTilesReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    def metadata(self) -> List[Tuple[str, str]]:
        """Return the (name, value) rows of the metadata table, with NULL
           values read as empty strings
        """
        try:
            return [(str(name), "" if value is None else str(value))
                    for name, value in
                    self.conn.execute("SELECT name, value FROM metadata")]
        except sqlite3.Error as e:
            raise ArchiveIOError(f"failed to read metadata: {e}") from e

    def tile_keys(self) -> Iterator[Tuple[int, int, int]]:
        """Yield the (zoom_level, tile_column, tile_row) key of every tile"""
        try:
            yield from self.conn.execute(
                "SELECT zoom_level, tile_column, tile_row FROM tiles")
        except sqlite3.Error as e:
            raise ArchiveIOError(f"failed to scan tiles: {e}") from e

    def tile_data(self, zoom: int, column: int, row: int) -> Optional[bytes]:
        """Return the data of a single tile or None if there is no such row

           Arguments:
           zoom (int):   zoom level
           column (int): tile column
           row (int):    tile row, counted from the south (TMS)
        """
        try:
            found = self.conn.execute(
                """SELECT tile_data FROM tiles WHERE zoom_level = ? AND
                   tile_column = ? AND tile_row = ?""",
                (zoom, column, row)).fetchone()
        except sqlite3.Error as e:
            raise ArchiveIOError(
                f"failed to read tile {zoom}/{column}/{row}: {e}") from e
        if found is None:
            return None
        return bytes(found[0]) if found[0] is not None else b""


def flip_row(zoom: int, row: int) -> int:
    """Convert between TMS rows (MBTiles) and XYZ rows (PMTiles)"""
    return (1 << zoom) - 1 - row


class MBTilesConverter:
    """Converts an MBTiles archive into a PMTiles archive"""

    def __init__(self, mbtiles_path: str, pmtiles_path: str,
                 deduplicate: bool = True,
                 spool: Optional[BinaryIO] = None) -> None:
        """Initialize a new MBTilesConverter instance

           Arguments:
           mbtiles_path (str):        path to the MBTiles archive
           pmtiles_path (str):        path to the resulting PMTiles archive
           deduplicate (bool):        store identical tiles only once.
                                      defaults to True.
           spool (optional[BinaryIO]): scratch file for tile contents.
                                      defaults to a temporary file.
        """
        self.mbtiles_path = mbtiles_path
        self.pmtiles_path = pmtiles_path
        self.deduplicate = deduplicate
        self.spool = spool

        # Start time for the conversion
        self.start_time = time.time()

    def _bold(self, text: str) -> str:
        """Return the given string wrapped in ANSI escape codes for bold
           formatting

           Arguments:
           text (str): string to wrap
        """
        return f"\033[1m{text}\033[0m"

    def _collect_tile_ids(self, reader: MBTilesReader) -> List[int]:
        """Return the sorted, unique tile IDs of every tile in the archive"""
        tile_ids = set()
        for zoom, column, row in reader.tile_keys():
            try:
                tile_ids.add(zxy_to_tileid(zoom, column,
                                           flip_row(zoom, row)))
            except (ValueError, OverflowError) as e:
                raise DataIntegrityError(
                    f"invalid tile key {zoom}/{column}/{row}: {e}") from e
        return sorted(tile_ids)

    def _write_tiles(self, reader: MBTilesReader, tile_ids: List[int],
                     resolver: Resolver, spool: BinaryIO) -> None:
        """Feed every tile to the resolver in tile ID order, appending new
           contents to the spool
        """
        for tile_id in tqdm(tile_ids, desc="Writing tiles", unit=" tiles",
                            mininterval=2):
            zoom, x, y = tileid_to_zxy(tile_id)
            data = reader.tile_data(zoom, x, flip_row(zoom, y))
            if data is None:
                raise DataIntegrityError(f"missing row for tile {zoom}/{x}/{y}")

            # Empty tiles are not addressed
            if not data:
                continue

            is_new, new_data = resolver.add_tile(tile_id, data)
            if is_new:
                try:
                    spool.write(new_data)
                except OSError as e:
                    raise ArchiveIOError(
                        f"failed to write to the content spool: {e}") from e

    def convert(self) -> ArchiveHeader:
        """Convert the archive

           Returns the header of the written archive
        """
        print(self._bold(f"Source: {self.mbtiles_path}"))
        print(self._bold(f"Output: {self.pmtiles_path}"))

        with MBTilesReader(self.mbtiles_path) as reader:
            rows = reader.metadata()
            if not mbtiles_has_format(rows):
                print("WARNING: MBTiles metadata is missing format "
                      "information. Update this with: INSERT INTO metadata "
                      "(name, value) VALUES ('format', 'png')")

            header, metadata = mbtiles_to_header(rows)

            print("\nPass 1: Assembling the tile ID set.")
            tile_ids = self._collect_tile_ids(reader)
            if not tile_ids:
                raise EmptyInputError("no tiles in MBTiles archive")
            print(f"Tiles: {len(tile_ids)}")

            print("\nPass 2: Writing tiles.")
            resolver = Resolver(self.deduplicate,
                                header.tile_type == TileType.MVT)
            spool = self.spool or tempfile.TemporaryFile()
            try:
                self._write_tiles(reader, tile_ids, resolver, spool)
            except BaseException:
                spool.close()
                raise

        print(self._bold("\nAssembling the archive."))
        header = finalize(resolver, header, spool, self.pmtiles_path,
                          metadata)

        total_time = time.time() - self.start_time
        print(self._bold("\nArchive is complete!"))
        print(f"Total runtime: {timedelta(seconds=int(total_time))}")

        return header


@click.command()
@click.argument('mbtiles_path', type=click.Path(exists=True, dir_okay=False,
                                                path_type=Path))
@click.argument('pmtiles_path', type=click.Path(dir_okay=False,
                                                path_type=Path))
@click.option('--deduplicate/--no-deduplicate', default=True,
              help='Store identical tiles only once (default: on)')
@click.help_option('--help', '-h')
def main(mbtiles_path, pmtiles_path, deduplicate):
    """Convert an MBTiles archive into a PMTiles archive.

    Arguments:

       MBTILES_PATH: Path to the MBTiles archive

       PMTILES_PATH: Output path for the PMTiles archive

    Example:

       mbtiles-pmtiles tileset.mbtiles tileset.pmtiles
    """
    # Check if the output file exists and remove if need be
    if pmtiles_path.exists():
        if click.confirm(f"Output file {pmtiles_path} already exists. "
                         "Overwrite?"):
            pmtiles_path.unlink()
        else:
            sys.exit(1)

    converter = MBTilesConverter(str(mbtiles_path), str(pmtiles_path),
                                 deduplicate)
    try:
        converter.convert()
    except ConversionError as e:
        # A partially written archive is never valid
        if pmtiles_path.exists():
            os.remove(pmtiles_path)
        raise click.ClickException(str(e))


if __name__ == "__main__":
    main()
