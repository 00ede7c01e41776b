"""
Conversion Errors

Exceptions raised while converting tile archives. Every stage raises the
first error it sees and nothing is recovered locally, so a caller should
treat any of these as aborting the whole conversion.
"""


class ConversionError(Exception):
    """Base class for all conversion failures"""


class FormatError(ConversionError):
    """Unrecognized or unsupported archive version, tag or metadata"""


class DataIntegrityError(ConversionError):
    """A source is missing data it promised or tiles arrived out of order"""


class EmptyInputError(ConversionError):
    """The source contains no tiles"""


class ArchiveIOError(ConversionError, OSError):
    """An open, read, write or seek failed

       The message names the stage that failed and the original OSError is
       chained as the cause.
    """
