#!/usr/bin/env python3
"""
Tile Archive Converter

Single entry point that picks the conversion from the file names:

   *.pmtiles -> *.pmtiles    upgrade a version 2 archive to version 3
   *.pmtiles -> directory    extract tiles into a ZXY directory structure
   anything  -> *.pmtiles    convert an MBTiles archive
"""

import os
import sys
import click

from pathlib import Path
from typing import BinaryIO, Optional

from .errors import ConversionError
from .mbtiles_to_pmtiles import MBTilesConverter
from .pmtiles_to_zxy import PMTilesExtractor
from .pmtiles_upgrade import PMTilesUpgrader


def convert(input_path: str, output_path: str, deduplicate: bool = True,
            spool: Optional[BinaryIO] = None,
            workers: Optional[int] = None) -> None:
    """Convert input_path into output_path

       Arguments:
       input_path (str):           MBTiles or PMTiles archive
       output_path (str):          PMTiles archive or output directory
       deduplicate (bool):         store identical tiles only once.
                                   defaults to True.
       spool (optional[BinaryIO]): scratch file for tile contents. defaults
                                   to a temporary file.
       workers (optional[int]):    worker threads used for extraction.
                                   defaults to the number of CPUs.
    """
    if str(input_path).endswith(".pmtiles"):
        if str(output_path).endswith(".pmtiles"):
            PMTilesUpgrader(input_path, output_path, deduplicate,
                            spool).convert()
        else:
            PMTilesExtractor(input_path, output_path, workers).run()
    else:
        MBTilesConverter(input_path, output_path, deduplicate,
                         spool).convert()


@click.command()
@click.argument('input_path', type=click.Path(exists=True, dir_okay=False,
                                              path_type=Path))
@click.argument('output_path', type=click.Path(path_type=Path))
@click.option('--deduplicate/--no-deduplicate', default=True,
              help='Store identical tiles only once (default: on)')
@click.option('--workers', type=click.IntRange(min=1), default=None,
              help='Worker threads for extraction (default: number of CPUs)')
@click.help_option('--help', '-h')
def main(input_path, output_path, deduplicate, workers):
    """Convert MBTiles or PMTiles v2 archives to PMTiles v3, or extract a
    PMTiles archive into a ZXY directory structure.

    Arguments:

       INPUT_PATH: MBTiles or PMTiles archive

       OUTPUT_PATH: PMTiles archive, or a directory for extraction

    Examples:

       pmtiles-convert tileset.mbtiles tileset.pmtiles

       pmtiles-convert old.pmtiles new.pmtiles

       pmtiles-convert tileset.pmtiles ./tiles/
    """
    writes_archive = not (input_path.name.endswith(".pmtiles")
                          and not output_path.name.endswith(".pmtiles"))

    # Check if the output file exists and remove if need be
    if writes_archive and output_path.exists():
        if click.confirm(f"Output file {output_path} already exists. "
                         "Overwrite?"):
            output_path.unlink()
        else:
            sys.exit(1)

    try:
        convert(str(input_path), str(output_path), deduplicate,
                workers=workers)
    except ConversionError as e:
        # A partially written archive is never valid
        if writes_archive and output_path.exists():
            os.remove(output_path)
        raise click.ClickException(str(e))


if __name__ == "__main__":
    main()
