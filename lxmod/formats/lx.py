"""
Based on the following resources:
- LX - Linear eXecutable Module Format Description (http://www.edm2.com/index.php/LX_-_Linear_eXecutable_Module_Format_Description)
- Ralf Brown's Interrupt List, linear executable (LE) page map
"""

import dataclasses
import logging
import struct
from enum import Enum, IntEnum, IntFlag
from functools import cached_property
from pathlib import Path
from typing import Callable, Iterator, Optional

from .exceptions import (
    ChainOverflow,
    FormatError,
    InvalidVirtualAddressError,
    LayoutError,
    LXHeaderNotFoundError,
    ObjectNotFoundError,
    TruncatedRecord,
)
from .image import Image, ImageImport, ImageRegion
from .lxfixup import (
    ChainLink,
    FixupDiagnostic,
    ImportNameTarget,
    ImportOrdinalTarget,
    LXFixupRecord,
    decode_fixup_pages,
    read_fixup_page_table,
    resolve_chain,
)
from .mz import ImageDosHeader
from .source import ByteSource

logger = logging.getLogger(__name__)

LX_HEADER_SIZE = 0xB0
LX_HEADER_FMT = "2s2BI2H41I"
LX_OBJECT_ENTRY_FMT = "6I"


class LXSignature(Enum):
    LX = b"LX"
    LE = b"LE"
    LC = b"LC"  # compressed LX


class PageTableVariant(IntEnum):
    # Value is the size of one entry.
    LE = 4
    LX = 8


class LXModuleFlags(IntFlag):
    # pylint: disable=implicit-flag-alias
    PER_PROCESS_INIT = 0x00000004
    INTERNAL_FIXUPS_APPLIED = 0x00000010
    EXTERNAL_FIXUPS_APPLIED = 0x00000020
    PM_INCOMPATIBLE = 0x00000100
    PM_COMPATIBLE = 0x00000200
    PM_API = 0x00000300
    NOT_LOADABLE = 0x00002000
    LIBRARY = 0x00008000
    PHYSICAL_DEVICE_DRIVER = 0x00020000
    VIRTUAL_DEVICE_DRIVER = 0x00028000
    MODULE_TYPE_MASK = 0x00038000
    MP_UNSAFE = 0x00080000
    PER_PROCESS_TERM = 0x40000000


# Offsets relative to the start of the LX header.
HEADER_RELATIVE_OFFSETS = (
    "object_table_off",
    "object_page_table_offset",
    "resource_table_off",
    "resident_name_table_offset",
    "entry_table_offset",
    "module_directives_offset",
    "fixup_page_table_offset",
    "fixup_record_table_offset",
    "import_module_table_offset",
    "import_procedure_table_offset",
    "per_page_checksum_offset",
)

# Offsets relative to the start of the file.
FILE_RELATIVE_OFFSETS = (
    "object_iter_pages_off",
    "data_pages_offset",
    "non_resident_name_table_offset",
    "debug_info_offset",
)


# pylint: disable=too-many-instance-attributes
@dataclasses.dataclass(frozen=True)
class LXImageHeader:
    # Order is significant!
    magic: bytes
    byte_ordering: int
    word_ordering: int
    format_level: int
    cpu_type: int
    os_type: int
    module_version: int
    module_flags: LXModuleFlags
    module_number_of_pages: int
    eip_object_nb: int
    eip: int
    esp_object_nb: int
    esp: int
    page_size: int
    page_offset_shift: int  # LE: number of bytes on the last page
    fixup_section_size: int
    fixup_section_checksum: int
    loader_section_size: int
    loader_section_checksum: int
    object_table_off: int
    nb_objects_in_module: int
    object_page_table_offset: int
    object_iter_pages_off: int
    resource_table_off: int
    nb_resource_table_entries: int
    resident_name_table_offset: int
    entry_table_offset: int
    module_directives_offset: int
    nb_module_directives: int
    fixup_page_table_offset: int
    fixup_record_table_offset: int
    import_module_table_offset: int
    nb_import_module_entries: int
    import_procedure_table_offset: int
    per_page_checksum_offset: int
    data_pages_offset: int
    nb_preload_pages: int
    non_resident_name_table_offset: int
    non_resident_name_table_length: int
    non_resident_name_table_checksum: int
    auto_ds_object_nb: int
    debug_info_offset: int
    debug_info_len: int
    nb_instance_preload: int
    nb_instance_demand: int
    heap_size: int
    stack_size: int

    @classmethod
    def from_source(
        cls, source: ByteSource, offset: int
    ) -> tuple["LXImageHeader", int]:
        source.require(offset, LX_HEADER_SIZE)
        if not cls.taste(source, offset):
            raise LXHeaderNotFoundError(f"No LX/LE/LC signature at 0x{offset:x}")

        (byte_ordering, word_ordering) = source.unpack("BB", offset + 2)
        if byte_ordering not in (0, 1) or word_ordering not in (0, 1):
            raise FormatError(
                f"Unknown byte/word ordering {byte_ordering}/{word_ordering}"
            )
        if byte_ordering != word_ordering:
            raise FormatError("Mixed byte and word ordering is not supported")

        source = source.with_byteorder(">" if byte_ordering else "<")
        items = list(source.unpack(LX_HEADER_FMT, offset))
        items[7] = LXModuleFlags(items[7])
        header = cls(*items)
        header.validate(len(source), offset)
        return header, offset + LX_HEADER_SIZE

    @classmethod
    def taste(cls, source: ByteSource, offset: int) -> bool:
        return source.data[offset : offset + 2] in (b"LX", b"LE", b"LC")

    def validate(self, source_size: int, offset: int):
        if self.page_size == 0 or self.page_size & (self.page_size - 1):
            raise FormatError(f"Page size {self.page_size} is not a power of two")

        if self.signature is LXSignature.LE:
            if self.page_offset_shift > self.page_size:
                raise FormatError(
                    f"Last page holds {self.page_offset_shift} bytes but pages are {self.page_size} bytes"
                )
        elif self.page_offset_shift >= 32:
            raise FormatError(f"Page offset shift {self.page_offset_shift} is too large")

        for name in HEADER_RELATIVE_OFFSETS:
            value = getattr(self, name)
            if value and offset + value > source_size:
                raise FormatError(f"{name} 0x{value:x} points past the end of the file")

        for name in FILE_RELATIVE_OFFSETS:
            value = getattr(self, name)
            if value and value > source_size:
                raise FormatError(f"{name} 0x{value:x} points past the end of the file")

    @property
    def signature(self) -> LXSignature:
        return LXSignature(self.magic)

    @property
    def byteorder(self) -> str:
        return ">" if self.byte_ordering else "<"

    @property
    def page_table_variant(self) -> PageTableVariant:
        if self.signature is LXSignature.LE:
            return PageTableVariant.LE

        return PageTableVariant.LX

    @property
    def page_shift(self) -> int:
        """LE modules have no page offset shift; the field holds the last page size."""
        if self.signature is LXSignature.LE:
            return 0

        return self.page_offset_shift

    @property
    def last_page_size(self) -> int:
        """Bytes on the last physical page of an LE module.
        LX modules give the size of each page in the page table instead."""
        if self.signature is LXSignature.LE:
            return self.page_offset_shift

        return 0


class LXObjectFlags(IntFlag):
    # pylint: disable=implicit-flag-alias
    READABLE = 0x0001
    WRITABLE = 0x0002
    EXECUTABLE = 0x0004
    RESOURCE = 0x0008
    DISCARDABLE = 0x0010
    SHARED = 0x0020
    PRELOAD_PAGES = 0x0040
    INVALID_PAGES = 0x0080
    ZERO_FILLED_PAGES = 0x0100
    RESIDENT = 0x0200  # VDDs, PDDs only
    RESIDENT_CONTIGUOUS = 0x0300
    RESIDENT_LONG_LOCKABLE = 0x0400
    RESERVED_0X800 = 0x0800
    ALIAS_16_16 = 0x1000
    BIG_DEFAULT = 0x2000  # 32-bit code or stack
    CONFORMING = 0x4000
    IO_PRIVILEGE = 0x8000


@dataclasses.dataclass(frozen=True)
class LXObjectTableEntry:
    number: int  # 1-based
    virtual_size: int
    reloc_base_addr: int
    flags: LXObjectFlags
    page_table_index: int  # 1-based
    page_count: int
    reserved: int

    @classmethod
    def from_source(
        cls, source: ByteSource, offset: int, count: int
    ) -> tuple[tuple["LXObjectTableEntry", ...], int]:
        struct_size = struct.calcsize("<" + LX_OBJECT_ENTRY_FMT)
        items = tuple(
            cls(
                number,
                virtual_size,
                reloc_base_addr,
                LXObjectFlags(flags),
                page_table_index,
                page_count,
                reserved,
            )
            for number, (
                virtual_size,
                reloc_base_addr,
                flags,
                page_table_index,
                page_count,
                reserved,
            ) in enumerate(
                source.iter_unpack(LX_OBJECT_ENTRY_FMT, offset, count), start=1
            )
        )
        return items, offset + count * struct_size

    @property
    def page_numbers(self) -> range:
        """Logical page numbers of the object's page table entries."""
        return range(self.page_table_index, self.page_table_index + self.page_count)

    @property
    def virtual_range(self) -> range:
        return range(self.reloc_base_addr, self.reloc_base_addr + self.virtual_size)

    @property
    def is_readable(self) -> bool:
        return LXObjectFlags.READABLE in self.flags

    @property
    def is_writable(self) -> bool:
        return LXObjectFlags.WRITABLE in self.flags

    @property
    def is_executable(self) -> bool:
        return LXObjectFlags.EXECUTABLE in self.flags


class LXPageFlags(IntEnum):
    LEGAL = 0x0  # Offset from preload page section
    ITERATED = 0x1  # Offset from iterated data pages section
    INVALID = 0x2
    ZERO_FILLED = 0x3
    RANGE = 0x4
    COMPRESSED = 0x5  # Offset from preload page section


PAGE_FLAGS_WITH_DATA = (
    LXPageFlags.LEGAL,
    LXPageFlags.ITERATED,
    LXPageFlags.COMPRESSED,
)


@dataclasses.dataclass(frozen=True)
class LXPageTableEntry:
    number: int  # 1-based logical page number
    variant: PageTableVariant
    # LE: physical page number. LX: page data offset before the shift is applied.
    offset: int
    size: int
    flags: LXPageFlags

    @classmethod
    def from_source(
        cls,
        source: ByteSource,
        offset: int,
        count: int,
        variant: PageTableVariant,
        *,
        page_size: int = 0,
        last_page_size: int = 0,
    ) -> tuple[tuple["LXPageTableEntry", ...], int]:
        """LE entries hold a 24-bit page number (stored high byte first) and 8 bits of flags.
        LX entries hold a 32-bit data offset, 16-bit data size and 16-bit flags.
        The size of LE pages is implied: every page is full except the last one.

        The LE page number is read as a 1-based index of a physical page in the
        data pages area, not as an offset shifted by the page offset shift. LE
        headers reuse that field for the size of the last page, and LE files
        produced by linkers number their pages this way."""
        raw: list[tuple[int, int, int]]
        if variant is PageTableVariant.LE:
            raw = [
                (value >> 8, 0, value & 0xFF)
                for (value,) in source.iter_unpack(">I", offset, count)
            ]
        else:
            raw = list(source.iter_unpack("IHH", offset, count))

        def to_flags(number: int, flags: int) -> LXPageFlags:
            try:
                return LXPageFlags(flags)
            except ValueError as ex:
                raise FormatError(f"Page {number} has unknown flags 0x{flags:x}") from ex

        flags = [to_flags(number, f) for number, (_, _, f) in enumerate(raw, start=1)]

        if variant is PageTableVariant.LE:
            last_physical = max(
                (
                    page_offset
                    for (page_offset, _, _), f in zip(raw, flags)
                    if f in PAGE_FLAGS_WITH_DATA
                ),
                default=0,
            )

            def le_size(page_offset: int, f: LXPageFlags) -> int:
                if f not in PAGE_FLAGS_WITH_DATA:
                    return 0
                if page_offset == last_physical and last_page_size:
                    return last_page_size
                return page_size

            raw = [
                (page_offset, le_size(page_offset, f), 0)
                for (page_offset, _, _), f in zip(raw, flags)
            ]

        items = tuple(
            cls(number, variant, page_offset, size, f)
            for number, ((page_offset, size, _), f) in enumerate(
                zip(raw, flags), start=1
            )
        )
        return items, offset + count * variant.value

    @property
    def has_data(self) -> bool:
        return self.flags in PAGE_FLAGS_WITH_DATA


def expand_iterated_page(data: bytes, page_size: int, byteorder: str = "<") -> bytes:
    """Iterated pages hold a series of records: number of iterations (2 bytes),
    length of the pattern (2 bytes), then the pattern itself."""
    fmt = byteorder + "2H"
    output = bytearray()
    ofs = 0
    while ofs + 4 <= len(data) and len(output) < page_size:
        (iterations, length) = struct.unpack_from(fmt, data, ofs)
        ofs += 4
        pattern = data[ofs : ofs + length]
        if len(pattern) < length:
            raise TruncatedRecord(f"Iterated data record at 0x{ofs - 4:x} is truncated")

        output += pattern * iterations
        ofs += length

    return bytes(output[:page_size])


def _table_offset(header_offset: int, table_offset: int, count: int, name: str) -> int:
    if count and not table_offset:
        raise LayoutError(f"{name} is absent but {count} entries are declared")

    return header_offset + table_offset


def _page_file_offset(header: LXImageHeader, entry: LXPageTableEntry) -> Optional[int]:
    if not entry.has_data:
        return None

    if entry.variant is PageTableVariant.LE:
        if entry.offset == 0:
            raise LayoutError(f"Page {entry.number} refers to physical page 0")
        return header.data_pages_offset + (entry.offset - 1) * header.page_size

    base = header.data_pages_offset
    if entry.flags == LXPageFlags.ITERATED and header.object_iter_pages_off:
        base = header.object_iter_pages_off

    return base + (entry.offset << header.page_shift)


def _validate_layout(
    objects: tuple[LXObjectTableEntry, ...],
    page_table: tuple[LXPageTableEntry, ...],
):
    # Objects are sorted by page table index and
    # together they use every entry of the page table exactly once.
    expected = 1
    for obj in objects:
        if obj.page_count == 0:
            continue

        last = obj.page_table_index + obj.page_count - 1
        if obj.page_table_index < 1 or last > len(page_table):
            raise LayoutError(
                f"Object {obj.number} uses pages {obj.page_table_index}-{last}"
                f" but the page table has {len(page_table)} entries"
            )

        if obj.page_table_index != expected:
            raise LayoutError(
                f"Object {obj.number} starts at page {obj.page_table_index}; expected page {expected}"
            )

        expected += obj.page_count

    if expected - 1 != len(page_table):
        raise LayoutError(
            f"Pages {expected}-{len(page_table)} do not belong to any object"
        )


def _decode_name(name: bytes) -> str:
    return name.decode("ascii", errors="replace")


def _read_import_modules(
    source: ByteSource, header: LXImageHeader, offset: int
) -> tuple[str, ...]:
    count = header.nb_import_module_entries
    pos = _table_offset(
        offset, header.import_module_table_offset, count, "Import module name table"
    )
    names = []
    for _ in range(count):
        name, pos = source.read_pascal_string(pos)
        names.append(_decode_name(name))

    return tuple(names)


def _read_import_procedures(
    source: ByteSource,
    header: LXImageHeader,
    offset: int,
    fixups: tuple[tuple[LXFixupRecord, ...], ...],
) -> dict[int, str]:
    """Read the names from the Import Procedure Name Table that fixups refer to."""
    name_offsets = {
        record.target.name_offset
        for records in fixups
        for record in records
        if isinstance(record.target, ImportNameTarget)
    }
    if not name_offsets:
        return {}

    table = _table_offset(
        offset,
        header.import_procedure_table_offset,
        len(name_offsets),
        "Import procedure name table",
    )
    return {
        name_offset: _decode_name(source.read_pascal_string(table + name_offset)[0])
        for name_offset in sorted(name_offsets)
    }


def _read_resident_names(
    source: ByteSource, header: LXImageHeader, offset: int
) -> tuple[tuple[str, int], ...]:
    """The first entry is the module name. The table ends with a zero-length name."""
    if not header.resident_name_table_offset:
        return ()

    pos = offset + header.resident_name_table_offset
    names = []
    while source.u8(pos) != 0:
        name, pos = source.read_pascal_string(pos)
        (ordinal,) = source.unpack("H", pos)
        pos += 2
        names.append((_decode_name(name), ordinal))

    return tuple(names)


# pylint: disable=too-many-public-methods
@dataclasses.dataclass(frozen=True, kw_only=True)
class LXImage(Image):
    header: LXImageHeader
    header_offset: int = 0
    mz_header: Optional[ImageDosHeader] = None
    byteorder: str = "<"
    objects: tuple[LXObjectTableEntry, ...]
    page_table: tuple[LXPageTableEntry, ...]
    fixup_page_table: tuple[int, ...] = dataclasses.field(repr=False, default=())
    # Indexed by logical page number - 1.
    fixups: tuple[tuple[LXFixupRecord, ...], ...] = dataclasses.field(repr=False)
    pages: tuple[bytes, ...] = dataclasses.field(repr=False)
    import_modules: tuple[str, ...] = ()
    import_procedures: dict[int, str] = dataclasses.field(
        default_factory=dict, repr=False, compare=False
    )
    resident_names: tuple[tuple[str, int], ...] = dataclasses.field(
        repr=False, default=()
    )
    diagnostics: tuple[FixupDiagnostic, ...] = ()

    @classmethod
    def from_source(
        cls,
        source: ByteSource,
        offset: int = 0,
        *,
        filepath: Path = Path(""),
        mz_header: Optional[ImageDosHeader] = None,
        best_effort: bool = False,
        workers: Optional[int] = None,
    ) -> "LXImage":
        # pylint: disable=too-many-locals
        header, _ = LXImageHeader.from_source(source, offset)
        source = source.with_byteorder(header.byteorder)

        objects, _ = LXObjectTableEntry.from_source(
            source,
            _table_offset(
                offset,
                header.object_table_off,
                header.nb_objects_in_module,
                "Object table",
            ),
            header.nb_objects_in_module,
        )
        page_table, _ = LXPageTableEntry.from_source(
            source,
            _table_offset(
                offset,
                header.object_page_table_offset,
                header.module_number_of_pages,
                "Object page table",
            ),
            header.module_number_of_pages,
            header.page_table_variant,
            page_size=header.page_size,
            last_page_size=header.last_page_size,
        )

        if header.fixup_page_table_offset:
            fixup_page_table = read_fixup_page_table(
                source, offset + header.fixup_page_table_offset, len(page_table)
            )
            if fixup_page_table[-1] and not header.fixup_record_table_offset:
                raise LayoutError(
                    "Fixup record table is absent but the fixup page table is not empty"
                )
            fixups, diagnostics = decode_fixup_pages(
                source,
                offset + header.fixup_record_table_offset,
                fixup_page_table,
                best_effort=best_effort,
                workers=workers,
            )
        else:
            fixup_page_table = ()
            fixups = tuple(() for _ in page_table)
            diagnostics = ()

        _validate_layout(objects, page_table)

        pages = tuple(
            b"" if position is None else source.read(position, entry.size)
            for entry, position in (
                (entry, _page_file_offset(header, entry)) for entry in page_table
            )
        )

        logger.debug(
            "%s module at 0x%x: %d objects, %d pages, %d fixup diagnostics",
            header.signature.name,
            offset,
            len(objects),
            len(page_table),
            len(diagnostics),
        )

        return cls(
            filepath=filepath,
            header=header,
            header_offset=offset,
            mz_header=mz_header,
            byteorder=header.byteorder,
            objects=objects,
            page_table=page_table,
            fixup_page_table=fixup_page_table,
            fixups=fixups,
            pages=pages,
            import_modules=_read_import_modules(source, header, offset),
            import_procedures=_read_import_procedures(source, header, offset, fixups),
            resident_names=_read_resident_names(source, header, offset),
            diagnostics=diagnostics,
        )

    @classmethod
    def from_memory(
        cls, data: bytes, mz_header: ImageDosHeader, filepath: Path
    ) -> "LXImage":
        return cls.from_source(
            ByteSource(data),
            mz_header.e_lfanew,
            filepath=filepath,
            mz_header=mz_header,
        )

    @property
    def module_name(self) -> str:
        if not self.resident_names:
            return ""

        return self.resident_names[0][0]

    @property
    def imagebase(self) -> int:
        return min((obj.reloc_base_addr for obj in self.objects), default=0)

    @property
    def entry(self) -> Optional[int]:
        if not self.header.eip_object_nb:
            return None

        return self.get_object(self.header.eip_object_nb).reloc_base_addr + self.header.eip

    @property
    def fixup_count(self) -> int:
        return sum(len(records) for records in self.fixups)

    def get_object(self, number: int) -> LXObjectTableEntry:
        """Convert 1-based object number into 0-based."""
        if not 1 <= number <= len(self.objects):
            raise ObjectNotFoundError(number)

        return self.objects[number - 1]

    def get_object_page_table(self, number: int) -> tuple[LXPageTableEntry, ...]:
        obj = self.get_object(number)
        if obj.page_count == 0:
            return ()

        start = obj.page_table_index - 1
        return self.page_table[start : start + obj.page_count]

    def get_object_for_page(self, page_number: int) -> LXObjectTableEntry:
        self._check_page(page_number)
        for obj in self.objects:
            if page_number in obj.page_numbers:
                return obj

        raise ObjectNotFoundError(page_number)

    def object_page_flags(self, number: int) -> tuple[LXPageFlags, ...]:
        """Flags for every logical page of the object. Pages at the end of the object
        that are not in the page table are zero-filled or invalid, following the
        object's last page table entry."""
        obj = self.get_object(number)
        flags = [entry.flags for entry in self.get_object_page_table(number)]
        total = -(-obj.virtual_size // self.header.page_size)

        if len(flags) < total:
            fill = flags[-1] if flags else LXPageFlags.ZERO_FILLED
            if fill not in (LXPageFlags.ZERO_FILLED, LXPageFlags.INVALID):
                fill = LXPageFlags.ZERO_FILLED
            flags += [fill] * (total - len(flags))

        return tuple(flags)

    def _check_page(self, page_number: int):
        if not 1 <= page_number <= len(self.page_table):
            raise IndexError(f"There is no logical page {page_number}")

    def get_page_data(self, page_number: int) -> bytes:
        """Page bytes as stored in the file. Empty for pages without data."""
        self._check_page(page_number)
        return self.pages[page_number - 1]

    def get_fixups(self, page_number: int) -> tuple[LXFixupRecord, ...]:
        self._check_page(page_number)
        return self.fixups[page_number - 1]

    def iter_chain_links(
        self, page_number: int
    ) -> Iterator[
        tuple[LXFixupRecord, tuple[ChainLink, ...], Optional[ChainOverflow]]
    ]:
        """Resolve each chain head on the page. A chain that overflows
        comes back with no links and the error; later chains still resolve."""
        data = self.get_page_data(page_number)
        for record in self.get_fixups(page_number):
            if not record.is_chain_head:
                continue

            try:
                links = resolve_chain(
                    record,
                    data,
                    self.header.page_size,
                    byteorder=self.byteorder,
                    page_number=page_number,
                )
            except ChainOverflow as ex:
                logger.debug("Page %d: %s", page_number, ex)
                yield record, (), ex
            else:
                yield record, links, None

    def get_page_vaddr(self, page_number: int) -> int:
        obj = self.get_object_for_page(page_number)
        index = page_number - obj.page_table_index
        return obj.reloc_base_addr + index * self.header.page_size

    def get_import_module(self, module_ordinal: int) -> str:
        if 1 <= module_ordinal <= len(self.import_modules):
            return self.import_modules[module_ordinal - 1]

        return f"#{module_ordinal}"

    @property
    def imports(self) -> Iterator[ImageImport]:
        """One import for each location that an import fixup patches."""
        for page_number, records in enumerate(self.fixups, start=1):
            page_addr = self.get_page_vaddr(page_number)
            for record in records:
                target = record.target
                if isinstance(target, ImportOrdinalTarget):
                    ordinal, name = target.ordinal, ""
                elif isinstance(target, ImportNameTarget):
                    ordinal = 0
                    name = self.import_procedures.get(target.name_offset, "")
                else:
                    continue

                module = self.get_import_module(target.module_ordinal)
                for source_offset in record.source_offsets:
                    yield ImageImport(
                        addr=page_addr + source_offset,
                        module=module,
                        ordinal=ordinal,
                        name=name,
                    )

    def _build_object_data(self, obj: LXObjectTableEntry) -> bytes:
        page_size = self.header.page_size
        chunks = []
        for entry in self.get_object_page_table(obj.number):
            data = self.pages[entry.number - 1]
            if entry.flags == LXPageFlags.ITERATED:
                data = expand_iterated_page(data, page_size, self.byteorder)
            elif entry.flags != LXPageFlags.LEGAL:
                if entry.flags == LXPageFlags.COMPRESSED:
                    logger.debug("Page %d is compressed; reading as zero", entry.number)
                data = b""

            chunks.append(data[:page_size].ljust(page_size, b"\x00"))

        return b"".join(chunks)[: obj.virtual_size]

    @cached_property
    def object_data(self) -> tuple[bytes, ...]:
        """Initialized bytes of each object as laid out in memory,
        without any fixups applied."""
        return tuple(self._build_object_data(obj) for obj in self.objects)

    def get_relative_addr(self, addr: int) -> tuple[int, int]:
        """Convert an absolute address into an (object number, offset) pair."""
        for obj in self.objects:
            if addr in obj.virtual_range:
                return obj.number, addr - obj.reloc_base_addr

        raise InvalidVirtualAddressError(f"{self.filepath} : 0x{addr:x}")

    def seek(self, vaddr: int) -> tuple[bytes, int]:
        (number, offset) = self.get_relative_addr(vaddr)
        obj = self.objects[number - 1]
        view = memoryview(self.object_data[number - 1])
        return (view[offset:], obj.virtual_size - offset)

    def _iter_regions(
        self, predicate: Callable[[LXObjectTableEntry], bool]
    ) -> Iterator[ImageRegion]:
        for obj, data in zip(self.objects, self.object_data):
            if predicate(obj):
                yield ImageRegion(obj.reloc_base_addr, data, obj.virtual_size)

    def get_code_regions(self) -> Iterator[ImageRegion]:
        return self._iter_regions(lambda obj: obj.is_executable)

    def get_data_regions(self) -> Iterator[ImageRegion]:
        return self._iter_regions(
            lambda obj: obj.is_writable and not obj.is_executable
        )

    def get_const_regions(self) -> Iterator[ImageRegion]:
        return self._iter_regions(
            lambda obj: obj.is_readable
            and not obj.is_writable
            and not obj.is_executable
            and LXObjectFlags.RESOURCE not in obj.flags
        )
