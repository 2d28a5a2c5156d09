import re
import dataclasses
from typing import Iterator
from pathlib import Path
from .exceptions import (
    InvalidVirtualAddressError,
    InvalidVirtualReadError,
    InvalidStringError,
)

# Matches 0-to-N non-null bytes.
r_szstring = re.compile(rb"[^\x00]*")

# Matches pairs of bytes until both are null.
r_widestring = re.compile(rb"(?:(?:[^\x00]\x00)|(?:\x00[^\x00])|(?:[^\x00][^\x00]))*")


@dataclasses.dataclass(frozen=True)
class ImageRegion:
    addr: int
    data: bytes
    size: int = 0

    def __post_init__(self):
        # Objects are often larger in memory than their pages in the file.
        object.__setattr__(self, "size", max(len(self.data), self.size))

    @property
    def range(self) -> range:
        return range(self.addr, self.addr + self.size)


@dataclasses.dataclass(frozen=True)
class ImageImport:
    """A location that the loader patches with an imported symbol.
    Imports by name have an ordinal of zero."""

    addr: int
    module: str
    ordinal: int = 0
    name: str = ""


@dataclasses.dataclass(frozen=True, kw_only=True)
class Image:
    """An image holds no reference to the buffer it was decoded from.
    Subclasses copy out whatever bytes they need."""

    filepath: Path

    def seek(self, vaddr: int) -> tuple[bytes, int]:
        """Return the initialized bytes starting at `vaddr` and the number of bytes
        left in the object at that address, which can be larger than the first part.
        Raise InvalidVirtualAddressError if no object contains the address."""
        raise NotImplementedError

    @property
    def imports(self) -> Iterator[ImageImport]:
        raise NotImplementedError

    @property
    def imagebase(self) -> int:
        raise NotImplementedError

    def is_valid_vaddr(self, vaddr: int) -> bool:
        try:
            self.seek(vaddr)
            return True
        except InvalidVirtualAddressError:
            return False

    def get_relative_addr(self, addr: int) -> tuple[int, int]:
        raise NotImplementedError

    def get_code_regions(self) -> Iterator[ImageRegion]:
        raise NotImplementedError

    def get_data_regions(self) -> Iterator[ImageRegion]:
        raise NotImplementedError

    def get_const_regions(self) -> Iterator[ImageRegion]:
        raise NotImplementedError

    def read_string(self, vaddr: int) -> bytes:
        (view, _) = self.seek(vaddr)

        match = r_szstring.match(view)
        if match is None:
            raise InvalidStringError(f"Cannot read string at {vaddr:x}")

        return bytes(match.group(0))

    def read_widechar(self, vaddr: int) -> bytes:
        (view, _) = self.seek(vaddr)

        match = r_widestring.match(view)

        # We only verify that we return a string that *could* be decoded.
        # The caller should trap UnicodeDecodeError.
        if match is None or len(match.group(0)) % 2 != 0:
            raise InvalidStringError(f"Cannot read widechar string at {vaddr:x}")

        return bytes(match.group(0))

    def read(self, vaddr: int, size: int) -> bytes:
        (view, remaining) = self.seek(vaddr)
        if size < 0 or size > remaining:
            raise InvalidVirtualReadError(
                f"{self.filepath} : Cannot read {size} bytes from 0x{vaddr:x}"
            )

        if size < len(view):
            return bytes(view[:size])

        # If we need to read uninitialized bytes, copy the physical bytes we have onto the buffer.
        data = bytearray(size)
        data[: len(view)] = view
        return bytes(data)
