#!/usr/bin/env python3
"""
PMTiles Upgrader

This script converts a version 2 PMTiles archive into a version 3 archive.

Every tile is replayed through the resolver, even when the source is already
deduplicated, so that vector tiles are recompressed and contents are
addressed the way version 3 expects.
"""

import os
import sys
import time
import click
import tempfile

from tqdm import tqdm
from pathlib import Path
from datetime import timedelta
from typing import BinaryIO, List, Optional
from pmtiles.tile import Entry, TileType

from .assembler import finalize
from .errors import ArchiveIOError, ConversionError, FormatError
from .header import MAGIC as V3_MAGIC, VERSION as V3_VERSION, ArchiveHeader
from .legacy import collect_entries, parse_header
from .metadata import legacy_to_header
from .resolver import Resolver

# Version 2 archives keep their header, metadata and root directory in
# this many leading bytes, and their tile data starts right after
LEGACY_HEADER_READ = 512000


class PMTilesUpgrader:
    """Converts a version 2 PMTiles archive into a version 3 archive"""

    def __init__(self, input_path: str, output_path: str,
                 deduplicate: bool = True,
                 spool: Optional[BinaryIO] = None) -> None:
        """Initialize a new PMTilesUpgrader instance

           Arguments:
           input_path (str):           path to the version 2 archive
           output_path (str):          path to the resulting archive
           deduplicate (bool):         store identical tiles only once.
                                       defaults to True.
           spool (optional[BinaryIO]): scratch file for tile contents.
                                       defaults to a temporary file.
        """
        self.input_path = input_path
        self.output_path = output_path
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

    def _read(self, f: BinaryIO, offset: int, length: int) -> bytes:
        """Read length bytes at offset, returning fewer only at end of file"""
        try:
            f.seek(offset)
            return f.read(length)
        except OSError as e:
            raise ArchiveIOError(f"failed to read {length} bytes at offset "
                                 f"{offset}: {e}") from e

    def _read_entries(self, f: BinaryIO) -> tuple[ArchiveHeader, dict,
                                                  List[Entry]]:
        """Parse the version 2 header and collect every tile entry, sorted
           by tile ID
        """
        head = self._read(f, 0, LEGACY_HEADER_READ)
        if head[0:7] == V3_MAGIC and len(head) > 7 and head[7] == V3_VERSION:
            raise FormatError("archive is already the latest PMTiles "
                              f"version ({V3_VERSION})")

        v2_metadata, root = parse_header(head)

        # The first 4 bytes of tile data are used to detect the tile type
        first4 = self._read(f, LEGACY_HEADER_READ, 4)
        if len(first4) != 4:
            raise FormatError("failed to read the first 4 bytes of tile data")

        header, metadata = legacy_to_header(v2_metadata, first4)

        entries: List[Entry] = []
        collect_entries(root, f, entries)
        entries.sort(key=lambda e: e.tile_id)
        return header, metadata, entries

    def _write_tiles(self, f: BinaryIO, entries: List[Entry],
                     resolver: Resolver, spool: BinaryIO) -> None:
        """Feed every non-empty tile to the resolver, appending new contents
           to the spool
        """
        for entry in tqdm(entries, desc="Writing tiles", unit=" tiles",
                          mininterval=2):
            if entry.length == 0:
                continue
            data = self._read(f, entry.offset, entry.length)
            is_new, new_data = resolver.add_tile(entry.tile_id, data)
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
        print(self._bold(f"Source: {self.input_path}"))
        print(self._bold(f"Output: {self.output_path}"))

        try:
            f = open(self.input_path, "rb")
        except OSError as e:
            raise ArchiveIOError(
                f"failed to open {self.input_path}: {e}") from e

        with f:
            print("\nReading the version 2 directories.")
            header, metadata, entries = self._read_entries(f)
            print(f"Tiles: {len(entries)}")

            # Recompress vector tiles even when the source was deduplicated
            resolver = Resolver(self.deduplicate,
                                header.tile_type == TileType.MVT)
            spool = self.spool or tempfile.TemporaryFile()
            try:
                self._write_tiles(f, entries, resolver, spool)
            except BaseException:
                spool.close()
                raise

        print(self._bold("\nAssembling the archive."))
        header = finalize(resolver, header, spool, self.output_path, metadata)

        total_time = time.time() - self.start_time
        print(self._bold("\nArchive is complete!"))
        print(f"Total runtime: {timedelta(seconds=int(total_time))}")

        return header


@click.command()
@click.argument('input_path', type=click.Path(exists=True, dir_okay=False,
                                              path_type=Path))
@click.argument('output_path', type=click.Path(dir_okay=False,
                                               path_type=Path))
@click.option('--deduplicate/--no-deduplicate', default=True,
              help='Store identical tiles only once (default: on)')
@click.help_option('--help', '-h')
def main(input_path, output_path, deduplicate):
    """Convert a version 2 PMTiles archive into a version 3 archive.

    Arguments:

       INPUT_PATH: Path to the version 2 archive

       OUTPUT_PATH: Output path for the version 3 archive

    Example:

       pmtiles-upgrade old.pmtiles new.pmtiles
    """
    # Check if the output file exists and remove if need be
    if output_path.exists():
        if click.confirm(f"Output file {output_path} already exists. "
                         "Overwrite?"):
            output_path.unlink()
        else:
            sys.exit(1)

    upgrader = PMTilesUpgrader(str(input_path), str(output_path), deduplicate)
    try:
        upgrader.convert()
    except ConversionError as e:
        # A partially written archive is never valid
        if output_path.exists():
            os.remove(output_path)
        raise click.ClickException(str(e))


if __name__ == "__main__":
    main()
