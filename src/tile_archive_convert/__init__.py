"""Tile archive conversion package supporting the conversion of MBTiles and
PMTiles v2 archives into deduplicated PMTiles v3 archives and the extraction
of PMTiles archives to ZXY directories"""

__version__ = "0.1.0"

from .convert import convert
from .errors import (ArchiveIOError, ConversionError, DataIntegrityError,
                     EmptyInputError, FormatError)
from .mbtiles_to_pmtiles import MBTilesConverter, MBTilesReader
from .pmtiles_to_zxy import PMTilesExtractor
from .pmtiles_upgrade import PMTilesUpgrader
from .resolver import Resolver

__all__ = ["convert", "MBTilesConverter", "MBTilesReader",
           "PMTilesExtractor", "PMTilesUpgrader", "Resolver",
           "ConversionError", "FormatError", "DataIntegrityError",
           "EmptyInputError", "ArchiveIOError"]
