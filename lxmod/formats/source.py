"""Random-access reader over an immutable byte buffer.

Every multi-byte read goes through `struct` with the byte order of the source,
unless the format string names its own byte order. Reads never come up short:
anything that does not fit raises TruncatedRecord."""

import dataclasses
import struct
from pathlib import Path
from typing import Iterator

from .exceptions import TruncatedRecord

_BYTE_ORDER_CHARS = "<>!=@"


@dataclasses.dataclass(frozen=True)
class ByteSource:
    data: bytes = dataclasses.field(repr=False)
    byteorder: str = "<"

    def __post_init__(self):
        if self.byteorder not in ("<", ">"):
            raise ValueError(f"Unsupported byte order {self.byteorder!r}")

    @classmethod
    def from_file(cls, filepath: Path) -> "ByteSource":
        with filepath.open("rb") as f:
            return cls(f.read())

    def __len__(self) -> int:
        return len(self.data)

    def with_byteorder(self, byteorder: str) -> "ByteSource":
        if byteorder == self.byteorder:
            return self

        return dataclasses.replace(self, byteorder=byteorder)

    def _format(self, fmt: str) -> str:
        if fmt[0] in _BYTE_ORDER_CHARS:
            return fmt

        return self.byteorder + fmt

    def require(self, offset: int, size: int):
        """Make sure that `size` bytes are available starting at `offset`."""
        if offset < 0 or size < 0 or offset + size > len(self.data):
            raise TruncatedRecord(
                f"Cannot read {size} bytes at 0x{offset:x}: source is 0x{len(self.data):x} bytes"
            )

    def unpack(self, fmt: str, offset: int) -> tuple:
        fmt = self._format(fmt)
        self.require(offset, struct.calcsize(fmt))
        return struct.unpack_from(fmt, self.data, offset)

    def iter_unpack(self, fmt: str, offset: int, count: int) -> Iterator[tuple]:
        fmt = self._format(fmt)
        size = struct.calcsize(fmt) * count
        self.require(offset, size)
        return struct.iter_unpack(fmt, self.data[offset : offset + size])

    def u8(self, offset: int) -> int:
        return self.unpack("B", offset)[0]

    def u16(self, offset: int) -> int:
        return self.unpack("H", offset)[0]

    def u32(self, offset: int) -> int:
        return self.unpack("I", offset)[0]

    def read(self, offset: int, size: int) -> bytes:
        """Copy `size` bytes out of the source. The result does not
        keep the underlying buffer alive."""
        self.require(offset, size)
        return bytes(self.data[offset : offset + size])

    def read_pascal_string(self, offset: int) -> tuple[bytes, int]:
        """Read a string prefixed by its one-byte length.
        Returns the string and the offset just past it."""
        length = self.u8(offset)
        return self.read(offset + 1, length), offset + 1 + length
