from dataclasses import dataclass
import struct

from .exceptions import FormatError
from .source import ByteSource


class MZHeaderNotFoundError(FormatError):
    """MZ magic string not found"""


# pylint: disable=too-many-instance-attributes
@dataclass(frozen=True)
class ImageDosHeader:
    # Order is significant!
    e_magic: bytes
    e_cblp: int
    e_cp: int
    e_crlc: int
    e_cparhdr: int
    e_minalloc: int
    e_maxalloc: int
    e_ss: int
    e_sp: int
    e_csum: int
    e_ip: int
    e_cs: int
    e_lfarlc: int
    e_ovno: int
    e_res: tuple[int, int, int, int]
    e_oemid: int
    e_oeminfo: int
    e_res2: tuple[int, int, int, int, int, int, int, int, int, int]
    e_lfanew: int

    STRUCT_FMT = "<2s29HI"

    @classmethod
    def from_source(cls, source: ByteSource, offset: int) -> tuple["ImageDosHeader", int]:
        if not cls.taste(source, offset):
            raise MZHeaderNotFoundError
        items = source.unpack(cls.STRUCT_FMT, offset)
        result = cls(
            *items[:14],
            items[14:18],
            *items[18:20],
            items[20:30],
            items[30],
        )
        return result, offset + struct.calcsize(cls.STRUCT_FMT)

    @classmethod
    def taste(cls, source: ByteSource, offset: int) -> bool:
        return source.data[offset : offset + 2] == b"MZ"

    @property
    def stub_size(self) -> int:
        """Size in bytes of the DOS program described by this header.
        The last 512-byte page holds only e_cblp bytes unless that is zero."""
        if self.e_cp == 0:
            return 0

        return (self.e_cp - 1) * 512 + (self.e_cblp or 512)
