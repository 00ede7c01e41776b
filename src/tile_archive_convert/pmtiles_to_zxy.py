#!/usr/bin/env python3
"""
PMTiles Extractor

This script extracts the tiles of a PMTiles (version 3) archive into a ZXY
directory structure.

The Z and Z/X directories are created up front by a pool of workers, so
that the tile writers never race to create the same directory. Tiles are
then streamed from the archive by a single reader thread and written by a
pool of workers. Existing tile files are never overwritten.
"""

import os
import sys
import time
import click

from tqdm import tqdm
from pathlib import Path
from datetime import timedelta
from typing import Iterator, Optional, Tuple
from pmtiles.tile import Entry, tileid_to_zxy

from .directory import iterate_entries, tile_extension
from .errors import ArchiveIOError, ConversionError, FormatError
from .header import (HEADER_LEN, ArchiveHeader, deserialize_header,
                     deserialize_metadata)
from .pipeline import FanOutPipeline, TileCounter

# Tiles written between progress bar refreshes
PROGRESS_INTERVAL = 1000


class PMTilesExtractor:
    """Extracts tiles from a PMTiles archive into a ZXY directory structure."""

    def __init__(self, pmtiles_path: str, output_dir: str,
                 workers: Optional[int] = None) -> None:
        """Initialize a new PMTilesExtractor instance

           Arguments:
           pmtiles_path (str):      path to the PMTiles archive
           output_dir (str):        path to the output directory
           workers (optional[int]): number of worker threads. defaults to
                                    the number of CPUs.
        """
        self.pmtiles_path = pmtiles_path
        self.output_dir = output_dir
        self.workers = workers

        # Tiles handled by the writers, written or skipped
        self.tiles = TileCounter()

        # Start time for the extraction
        self.start_time = time.time()

    def _bold(self, text: str) -> str:
        """Return the given string wrapped in ANSI escape codes for bold
           formatting

           Arguments:
           text (str): string to wrap
        """
        return f"\033[1m{text}\033[0m"

    def _read_at(self, f, offset: int, length: int) -> bytes:
        """Read exactly length bytes at offset"""
        try:
            f.seek(offset)
            data = f.read(length)
        except OSError as e:
            raise ArchiveIOError(f"failed to read {length} bytes at offset "
                                 f"{offset}: {e}") from e
        if len(data) != length:
            raise FormatError(f"archive truncated at offset {offset}")
        return data

    def read_header(self) -> ArchiveHeader:
        """Read and validate the archive header"""
        try:
            with open(self.pmtiles_path, "rb") as f:
                return deserialize_header(f.read(HEADER_LEN))
        except OSError as e:
            raise ArchiveIOError(
                f"failed to read header of {self.pmtiles_path}: {e}") from e

    def tile_path(self, tile_id: int, extension: str) -> str:
        """Return the output path of a tile

           Arguments:
           tile_id (int):   tile ID
           extension (str): file extension including the dot
        """
        z, x, y = tileid_to_zxy(tile_id)
        return os.path.join(self.output_dir, str(z), str(x),
                            f"{y}{extension}")

    def generate_directory_structure(self, max_zoom: int) -> int:
        """Create the Z and Z/X directories for every zoom level

           Arguments:
           max_zoom (int): maximum zoom level of the archive

           Returns the number of directories created
        """
        total_dirs = sum(2 ** z for z in range(max_zoom + 1)) + max_zoom + 2
        created = TileCounter()

        try:
            os.makedirs(self.output_dir, exist_ok=True)
        except OSError as e:
            raise ArchiveIOError(f"failed to create output directory "
                                 f"{self.output_dir}: {e}") from e
        created.add()

        def produce() -> Iterator[str]:
            for z in range(max_zoom + 1):
                zoom_dir = os.path.join(self.output_dir, str(z))
                try:
                    os.makedirs(zoom_dir, exist_ok=True)
                except OSError as e:
                    raise ArchiveIOError(f"failed to create zoom directory "
                                         f"{zoom_dir}: {e}") from e
                created.add()

                # Queue every X directory at this zoom level
                for x in range(2 ** z):
                    yield os.path.join(zoom_dir, str(x))

        with tqdm(total=total_dirs, desc="Creating directories",
                  unit=" dirs", mininterval=1) as pbar:

            def make_dir(path: str) -> None:
                try:
                    os.makedirs(path, exist_ok=True)
                except OSError as e:
                    raise ArchiveIOError(
                        f"failed to create directory {path}: {e}") from e

                # Update the progress bar periodically to reduce contention
                count = created.add()
                if count % PROGRESS_INTERVAL == 0:
                    pbar.n = count
                    pbar.refresh()

            FanOutPipeline(self.workers).run(produce, make_dir)
            pbar.n = created.value
            pbar.refresh()

        return created.value

    def write_metadata(self, header: ArchiveHeader) -> Optional[str]:
        """Write metadata.json into the output directory when the archive
           has metadata

           Returns the path written, if any
        """
        if header.metadata_length == 0:
            return None

        try:
            with open(self.pmtiles_path, "rb") as f:
                raw = self._read_at(f, header.metadata_offset,
                                    header.metadata_length)
            metadata = deserialize_metadata(raw, header.internal_compression)

            metadata_path = os.path.join(self.output_dir, "metadata.json")
            with open(metadata_path, "wb") as f:
                f.write(metadata)
        except OSError as e:
            raise ArchiveIOError(f"failed to write metadata.json: {e}") from e

        return metadata_path

    def extract_tiles(self, header: ArchiveHeader) -> int:
        """Write every tile of the archive into the directory structure

           Arguments:
           header (ArchiveHeader): header of the archive

           Returns the number of tiles handled, which counts tiles whose
           file already existed
        """
        extension = tile_extension(header.tile_type)
        pipeline = FanOutPipeline(self.workers)

        def produce() -> Iterator[Tuple[Entry, bytes]]:
            # The reader owns its own file handle
            try:
                f = open(self.pmtiles_path, "rb")
            except OSError as e:
                raise ArchiveIOError(f"failed to open {self.pmtiles_path} "
                                     f"for reading: {e}") from e
            with f:
                def get_bytes(offset: int, length: int) -> bytes:
                    return self._read_at(f, offset, length)

                for entry in iterate_entries(header, get_bytes):
                    data = get_bytes(header.tile_data_offset + entry.offset,
                                     entry.length)
                    yield entry, data

        with tqdm(total=header.addressed_tiles_count,
                  desc="Extracting tiles", unit=" tiles",
                  mininterval=1) as pbar:

            def write_run(task: Tuple[Entry, bytes]) -> None:
                entry, data = task
                for i in range(entry.run_length):
                    if pipeline.cancelled.is_set():
                        return

                    tile_path = self.tile_path(entry.tile_id + i, extension)
                    try:
                        with open(tile_path, "xb") as f:
                            f.write(data)
                    except FileExistsError:
                        pass
                    except OSError as e:
                        raise ArchiveIOError(
                            f"failed to write tile to {tile_path}: {e}") from e

                    # Update the progress bar periodically to reduce
                    # contention
                    count = self.tiles.add()
                    if count % PROGRESS_INTERVAL == 0:
                        pbar.n = count
                        pbar.refresh()

            pipeline.run(produce, write_run)
            pbar.n = self.tiles.value
            pbar.refresh()

        return self.tiles.value

    def run(self) -> int:
        """Run the extraction process

           Returns the number of tiles handled
        """
        print(self._bold(f"Source: {self.pmtiles_path}"))
        print(self._bold(f"Output: {self.output_dir}"))

        header = self.read_header()

        print(self._bold("\nCreating the directory structure."))
        self.generate_directory_structure(header.max_zoom)

        metadata_path = self.write_metadata(header)
        if metadata_path:
            print(f"Wrote metadata.json to {metadata_path}")

        print(self._bold("\nExtracting tiles."))
        count = self.extract_tiles(header)

        total_time = time.time() - self.start_time
        print(self._bold("\nExtraction complete!"))
        print(f"Extracted {count} tiles to {self.output_dir}")
        print(f"Total runtime: {timedelta(seconds=int(total_time))}")

        return count


@click.command()
@click.argument('pmtiles_path', type=click.Path(exists=True, dir_okay=False,
                                                path_type=Path))
@click.argument('output_dir', type=click.Path(file_okay=False,
                                              path_type=Path))
@click.option('--workers', type=click.IntRange(min=1), default=None,
              help='Number of worker threads (default: number of CPUs)')
@click.help_option('--help', '-h')
def main(pmtiles_path, output_dir, workers):
    """Extract tiles from a PMTiles archive into a ZXY directory structure.

    Arguments:

       PMTILES_PATH: Path to the PMTiles archive

       OUTPUT_DIR: Directory where the extracted tiles will be written

    Example:

       # Extract map.pmtiles to ./tiles/

       pmtiles-zxy map.pmtiles ./tiles/
    """
    extractor = PMTilesExtractor(str(pmtiles_path), str(output_dir), workers)
    try:
        extractor.run()
    except ConversionError as e:
        raise click.ClickException(str(e))
    except KeyboardInterrupt:
        print("\n\nKeyboard interrupt! Existing tiles are kept, run again "
              "to complete the extraction.")
        sys.exit(1)


if __name__ == "__main__":
    main()
