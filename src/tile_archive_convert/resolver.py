"""
Tile Content Resolver

Deduplicates and compresses tile contents while building the run-length
encoded directory entries of an archive. Tiles must be added in strictly
increasing tile ID order.
"""

import gzip
import hashlib
import io

from typing import Dict, List, Optional, Tuple
from pmtiles.tile import Entry

from .errors import DataIntegrityError
from .metadata import GZIP_MAGIC

# Largest run length a directory entry can hold
MAX_RUN_LENGTH = 2 ** 32 - 1


class Resolver:
    """Content-addressed store for the tiles of a single archive

       Digests are 128-bit blake2b sums used purely as map keys; collisions
       are not detected.
    """

    def __init__(self, deduplicate: bool, compress: bool) -> None:
        """Initialize a new Resolver instance

           Arguments:
           deduplicate (bool): store identical contents only once
           compress (bool):    gzip contents that are not already gzipped
        """
        self.deduplicate = deduplicate
        self.compress = compress

        self.entries: List[Entry] = []
        self.offset = 0
        self.offset_map: Dict[bytes, Tuple[int, int]] = {}
        self.addressed_tiles = 0

        # Scratch buffer reused for every compressed tile
        self._compress_buf = io.BytesIO()

        # First tile ID that a following call may use
        self._next_tile_id = 0

    def distinct_content_count(self) -> int:
        """Return the number of distinct tile contents in the archive"""
        if self.deduplicate:
            return len(self.offset_map)
        return self.addressed_tiles

    def _gzip(self, data: bytes) -> bytes:
        buf = self._compress_buf
        buf.seek(0)
        buf.truncate()
        with gzip.GzipFile(fileobj=buf, mode="wb", compresslevel=9,
                           mtime=0) as gz:
            gz.write(data)
        return buf.getvalue()

    def _advance(self, tile_id: int, run_length: int) -> None:
        self._next_tile_id = tile_id + run_length
        self.addressed_tiles += run_length

    def add_tile(self, tile_id: int, data: bytes,
                 run_length: int = 1) -> Tuple[bool, Optional[bytes]]:
        """Add a run of identical tiles

           Arguments:
           tile_id (int):    first tile ID of the run
           data (bytes):     tile contents
           run_length (int): number of consecutive tile IDs sharing the
                             contents. defaults to 1.

           Returns a (bool, bytes) tuple indicating whether the contents are
           new and, if so, the bytes to append to the tile data section

           Raises DataIntegrityError when tile_id overlaps the previous run
           or when a merged run would overflow its 32-bit field
        """
        if tile_id < self._next_tile_id:
            raise DataIntegrityError(
                f"tile {tile_id} added out of order, expected an ID of at "
                f"least {self._next_tile_id}")
        if not 1 <= run_length <= MAX_RUN_LENGTH:
            raise DataIntegrityError(f"invalid run length {run_length}")

        digest = None
        if self.deduplicate:
            digest = hashlib.blake2b(data, digest_size=16).digest()
            found = self.offset_map.get(digest)

            if found is not None:
                found_offset, found_length = found
                last = self.entries[-1]
                if (tile_id == last.tile_id + last.run_length
                        and last.offset == found_offset):
                    if last.run_length + run_length > MAX_RUN_LENGTH:
                        raise DataIntegrityError(
                            "maximum 32-bit run length exceeded")
                    last.run_length += run_length
                else:
                    self.entries.append(Entry(tile_id, found_offset,
                                              found_length, run_length))
                self._advance(tile_id, run_length)
                return False, None

        if not self.compress or data[:2] == GZIP_MAGIC:
            # The tile is already compressed or should be stored as-is
            new_data = bytes(data)
        else:
            new_data = self._gzip(data)

        if self.deduplicate:
            self.offset_map[digest] = (self.offset, len(new_data))
        self.entries.append(Entry(tile_id, self.offset, len(new_data),
                                  run_length))
        self.offset += len(new_data)
        self._advance(tile_id, run_length)
        return True, new_data
