from typing import Optional


class LXDecodeError(ValueError):
    """Base class for errors raised while decoding a linear executable."""


class FormatError(LXDecodeError):
    """The header is not a usable LX/LE/LC header: bad signature,
    unsupported byte ordering, or an inconsistent page size."""


class TruncatedRecord(LXDecodeError):
    """The byte source ran out in the middle of a structure."""


class LayoutError(LXDecodeError):
    """The tables decoded fine on their own but disagree with each other."""


class UnsupportedFixupVariant(LXDecodeError):
    """A fixup record uses a source/target combination we cannot decode,
    or its fields run past the end of the page's fixup records."""

    def __init__(
        self,
        message: str,
        *,
        source_type: Optional[int] = None,
        target_flags: Optional[int] = None,
        page_number: Optional[int] = None,
        offset: Optional[int] = None,
    ):
        super().__init__(message)
        self.source_type = source_type
        self.target_flags = target_flags
        self.page_number = page_number
        self.offset = offset

    def __str__(self) -> str:
        flags = "??" if self.source_type is None else f"{self.source_type:02x}"
        flags += ":"
        flags += "??" if self.target_flags is None else f"{self.target_flags:02x}"
        where = "" if self.page_number is None else f" (page {self.page_number})"
        return f"{self.args[0]} [src:flags {flags}]{where}"


class ChainOverflow(LXDecodeError):
    """A chain of internal fixups did not terminate within the page."""

    def __init__(self, message: str, *, page_number: int = 0, source_offset: int = 0):
        super().__init__(message)
        self.page_number = page_number
        self.source_offset = source_offset


class LXHeaderNotFoundError(FormatError):
    """LX, LE or LC magic string not found."""


class ObjectNotFoundError(KeyError):
    """The specified object was not found in the module."""


class InvalidVirtualAddressError(IndexError):
    """The given virtual address is too high or low
    to point to something in the binary file."""


class InvalidVirtualReadError(IndexError):
    """Reading the given number of bytes from the given virtual address
    would cause us to read past the end of the object or past the end
    of the virtual address space."""


class InvalidStringError(ValueError):
    """Could not read a string at the given address."""
