"""
Fixup Page Table and Fixup Record Table of linear executables.

Based on the following resources:
- LX - Linear eXecutable Module Format Description (http://www.edm2.com/index.php/LX_-_Linear_eXecutable_Module_Format_Description)

Each fixup record has the following format:

    +-----+-----+-----+-----+
    | SRC |FLAGS|SRCOFF/CNT*|
    |           TARGET DATA *           |
    |     ADDITIVE * @      |
    | SRCOFF1 @ |   . . .   | SRCOFFn @ |
    +-----+-----+----   ----+-----+-----+

The width of every field after FLAGS depends on bits in SRC and FLAGS.
"""

import dataclasses
import logging
import struct
from concurrent.futures import ThreadPoolExecutor
from enum import IntEnum, IntFlag
from itertools import pairwise
from typing import Iterator, Optional, Union

from .exceptions import ChainOverflow, LayoutError, UnsupportedFixupVariant
from .source import ByteSource

logger = logging.getLogger(__name__)

SOURCE_TYPE_MASK = 0x0F
TARGET_TYPE_MASK = 0x03

# Next-offset value that ends a chain of internal fixups.
CHAIN_END = 0xFFF
CHAIN_TARGET_MASK = 0xFFFFF


class FixupSourceType(IntEnum):
    BYTE = 0x0  # 8 bits
    SELECTOR_16 = 0x2  # 16 bits
    POINTER_16_16 = 0x3  # 32 bits
    OFFSET_16 = 0x5  # 16 bits
    POINTER_16_32 = 0x6  # 48 bits
    OFFSET_32 = 0x7  # 32 bits
    SELF_RELATIVE_32 = 0x8  # 32 bits


class FixupSourceFlags(IntFlag):
    ALIAS = 0x10  # Fixup refers to the 16:16 alias of the object
    SOURCE_LIST = 0x20  # SRCOFF is a count and a list of offsets trails the record


class FixupTargetType(IntEnum):
    INTERNAL = 0x0
    IMPORT_ORDINAL = 0x1
    IMPORT_NAME = 0x2
    INTERNAL_ENTRY = 0x3  # Internal reference via the entry table


class FixupTargetFlags(IntFlag):
    ADDITIVE = 0x04
    CHAINING = 0x08
    TARGET_32 = 0x10  # Target offset (or import ordinal) is 32 bits
    ADDITIVE_32 = 0x20
    OBJECT_16 = 0x40  # Object number or module ordinal is 16 bits
    ORDINAL_8 = 0x80  # Import ordinal is 8 bits


# Source types that have a 16:16 alias.
ALIAS_SOURCE_TYPES = (
    FixupSourceType.SELECTOR_16,
    FixupSourceType.POINTER_16_16,
    FixupSourceType.POINTER_16_32,
)

# Source types that the loader must always apply, even for internal targets.
POINTER_SOURCE_TYPES = ALIAS_SOURCE_TYPES


@dataclasses.dataclass(frozen=True)
class InternalTarget:
    object_number: int
    # Not present for 16-bit selector fixups.
    offset: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class EntryTableTarget:
    ordinal: int
    offset: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class ImportOrdinalTarget:
    module_ordinal: int
    ordinal: int


@dataclasses.dataclass(frozen=True)
class ImportNameTarget:
    module_ordinal: int
    name_offset: int  # into the Import Procedure Name Table


FixupTarget = Union[
    InternalTarget, EntryTableTarget, ImportOrdinalTarget, ImportNameTarget
]


def _object_fmt(target_flags: int) -> str:
    return "H" if target_flags & FixupTargetFlags.OBJECT_16 else "B"


def _offset_fmt(target_flags: int) -> str:
    return "I" if target_flags & FixupTargetFlags.TARGET_32 else "H"


def _ordinal_fmt(target_flags: int) -> str:
    if target_flags & FixupTargetFlags.ORDINAL_8:
        return "B"

    return _offset_fmt(target_flags)


def _additive_fmt(target_flags: int) -> str:
    return "I" if target_flags & FixupTargetFlags.ADDITIVE_32 else "H"


def _target_data_fmt(source_type: int, target_flags: int) -> str:
    """struct format of the TARGET DATA field. The first member is always
    the object number, entry ordinal or module ordinal."""
    target_type = target_flags & TARGET_TYPE_MASK
    fmt = _object_fmt(target_flags)

    if target_type in (FixupTargetType.INTERNAL, FixupTargetType.INTERNAL_ENTRY):
        if source_type & SOURCE_TYPE_MASK != FixupSourceType.SELECTOR_16:
            fmt += _offset_fmt(target_flags)
    elif target_type == FixupTargetType.IMPORT_ORDINAL:
        fmt += _ordinal_fmt(target_flags)
    else:
        fmt += _offset_fmt(target_flags)

    return fmt


def fixup_record_size(source_type: int, target_flags: int, count: int = 1) -> int:
    """Number of bytes taken by a record with the given SRC and FLAGS bytes.
    `count` is the length of the source offset list and is ignored
    unless the Source List flag is set."""
    size = 2
    source_list = source_type & FixupSourceFlags.SOURCE_LIST
    size += 1 if source_list else 2
    size += struct.calcsize("<" + _target_data_fmt(source_type, target_flags))
    if target_flags & FixupTargetFlags.ADDITIVE:
        size += struct.calcsize("<" + _additive_fmt(target_flags))
    if source_list:
        size += 2 * count

    return size


def check_fixup_variant(source_type: int, target_flags: int) -> Optional[str]:
    """Return a description of the problem if we cannot decode a record
    with these SRC and FLAGS bytes, or None if it is fine."""
    kind = source_type & SOURCE_TYPE_MASK
    if kind not in list(FixupSourceType):
        return f"Undefined fixup source type 0x{kind:x}"

    if source_type & FixupSourceFlags.ALIAS and kind not in ALIAS_SOURCE_TYPES:
        return f"Alias flag set on source type 0x{kind:x}"

    if target_flags & FixupTargetFlags.CHAINING:
        if kind != FixupSourceType.OFFSET_32:
            return "Chained fixup must be a 32-bit offset fixup"
        if target_flags & TARGET_TYPE_MASK not in (
            FixupTargetType.INTERNAL,
            FixupTargetType.INTERNAL_ENTRY,
        ):
            return "Chained fixup must have an internal target"
        if source_type & FixupSourceFlags.SOURCE_LIST:
            return "Chained fixup cannot have a source list"

    return None


@dataclasses.dataclass(frozen=True)
class LXFixupRecord:
    # pylint: disable=too-many-instance-attributes
    source_type: int
    target_flags: int
    source_offsets: tuple[int, ...]
    target: FixupTarget
    additive: Optional[int] = None
    # Number of bytes the record took up in the fixup record table.
    size: int = 0

    @property
    def kind(self) -> FixupSourceType:
        return FixupSourceType(self.source_type & SOURCE_TYPE_MASK)

    @property
    def source_flags(self) -> FixupSourceFlags:
        return FixupSourceFlags(self.source_type & ~SOURCE_TYPE_MASK & 0xFF)

    @property
    def target_type(self) -> FixupTargetType:
        return FixupTargetType(self.target_flags & TARGET_TYPE_MASK)

    @property
    def flags(self) -> FixupTargetFlags:
        return FixupTargetFlags(self.target_flags & ~TARGET_TYPE_MASK & 0xFF)

    @property
    def has_source_list(self) -> bool:
        return bool(self.source_type & FixupSourceFlags.SOURCE_LIST)

    @property
    def is_chain_head(self) -> bool:
        return bool(self.target_flags & FixupTargetFlags.CHAINING)

    @property
    def is_internal(self) -> bool:
        return self.target_type in (
            FixupTargetType.INTERNAL,
            FixupTargetType.INTERNAL_ENTRY,
        )

    @property
    def is_internal_non_pointer(self) -> bool:
        """Records of this kind come last in each page. A loader that placed every
        object at its preferred base address can skip them."""
        return self.is_internal and self.kind not in POINTER_SOURCE_TYPES

    @property
    def target_offset(self) -> Optional[int]:
        if isinstance(self.target, (InternalTarget, EntryTableTarget)):
            return self.target.offset

        return None


@dataclasses.dataclass(frozen=True)
class FixupDiagnostic:
    """A page whose fixup records could not be fully decoded."""

    page_number: int
    error: UnsupportedFixupVariant


class _PageOverrun(Exception):
    pass


@dataclasses.dataclass
class FixupCursor:
    """Sequential reader over the fixup records of one page."""

    source: ByteSource
    offset: int
    end: int

    @property
    def remaining(self) -> int:
        return self.end - self.offset

    def unpack(self, fmt: str) -> tuple:
        fmt = self.source.byteorder + fmt
        size = struct.calcsize(fmt)
        if size > self.remaining:
            raise _PageOverrun(size - self.remaining)

        items = self.source.unpack(fmt, self.offset)
        self.offset += size
        return items


def decode_fixup_record(cursor: FixupCursor, page_number: int = 0) -> LXFixupRecord:
    start = cursor.offset
    source_type: Optional[int] = None
    target_flags: Optional[int] = None

    try:
        (source_type, target_flags) = cursor.unpack("BB")
        problem = check_fixup_variant(source_type, target_flags)
        if problem is not None:
            raise UnsupportedFixupVariant(
                problem,
                source_type=source_type,
                target_flags=target_flags,
                page_number=page_number,
                offset=start,
            )

        # SRCOFF is a signed word. It is negative when the fixup started on the previous page.
        source_list = source_type & FixupSourceFlags.SOURCE_LIST
        (srcoff_or_count,) = cursor.unpack("B" if source_list else "h")

        target_type = target_flags & TARGET_TYPE_MASK
        target_data = cursor.unpack(_target_data_fmt(source_type, target_flags))
        target: FixupTarget
        if target_type == FixupTargetType.INTERNAL:
            target = InternalTarget(*target_data)
        elif target_type == FixupTargetType.INTERNAL_ENTRY:
            target = EntryTableTarget(*target_data)
        elif target_type == FixupTargetType.IMPORT_ORDINAL:
            target = ImportOrdinalTarget(*target_data)
        else:
            target = ImportNameTarget(*target_data)

        additive = None
        if target_flags & FixupTargetFlags.ADDITIVE:
            (additive,) = cursor.unpack(_additive_fmt(target_flags))

        if source_list:
            source_offsets = cursor.unpack(f"{srcoff_or_count}h")
        else:
            source_offsets = (srcoff_or_count,)

    except _PageOverrun as ex:
        raise UnsupportedFixupVariant(
            f"Fixup record at 0x{start:x} runs {ex.args[0]} bytes past the end of the page's records",
            source_type=source_type,
            target_flags=target_flags,
            page_number=page_number,
            offset=start,
        ) from None

    return LXFixupRecord(
        source_type=source_type,
        target_flags=target_flags,
        source_offsets=tuple(source_offsets),
        target=target,
        additive=additive,
        size=cursor.offset - start,
    )


def iter_page_fixups(
    source: ByteSource, offset: int, length: int, page_number: int = 0
) -> Iterator[LXFixupRecord]:
    """Decode the records in [offset, offset + length). The records must
    use up the range exactly."""
    if length < 0:
        raise LayoutError(f"Page {page_number} has a negative fixup record length")

    source.require(offset, length)
    cursor = FixupCursor(source=source, offset=offset, end=offset + length)
    while cursor.remaining > 0:
        yield decode_fixup_record(cursor, page_number)


def decode_page_fixups(
    source: ByteSource, offset: int, length: int, page_number: int = 0
) -> tuple[LXFixupRecord, ...]:
    return tuple(iter_page_fixups(source, offset, length, page_number))


def read_fixup_page_table(
    source: ByteSource, offset: int, page_count: int
) -> tuple[int, ...]:
    """The Fixup Page Table has one offset into the Fixup Record Table per logical page,
    plus one more that marks the end of the records for the last page."""
    offsets = tuple(value for (value,) in source.iter_unpack("I", offset, page_count + 1))

    for page_number, (start, end) in enumerate(pairwise(offsets), start=1):
        if end < start:
            raise LayoutError(
                f"Fixup records for page {page_number} end before they start: 0x{start:x} > 0x{end:x}"
            )

    return offsets


def _decode_page(
    source: ByteSource,
    page_number: int,
    offset: int,
    length: int,
    best_effort: bool,
) -> tuple[tuple[LXFixupRecord, ...], Optional[FixupDiagnostic]]:
    records = []
    try:
        for record in iter_page_fixups(source, offset, length, page_number):
            records.append(record)
    except UnsupportedFixupVariant as ex:
        if not best_effort:
            raise

        logger.warning("Skipping rest of page %d: %s", page_number, ex)
        return tuple(records), FixupDiagnostic(page_number=page_number, error=ex)

    return tuple(records), None


def decode_fixup_pages(
    source: ByteSource,
    record_table_offset: int,
    page_offsets: tuple[int, ...],
    *,
    best_effort: bool = False,
    workers: Optional[int] = None,
) -> tuple[tuple[tuple[LXFixupRecord, ...], ...], tuple[FixupDiagnostic, ...]]:
    """Decode the fixup records of every page, in page order.
    With best_effort, a page that cannot be decoded keeps the records read before
    the problem and a diagnostic is returned for it. Otherwise the error propagates."""
    ranges = [
        (page_number, record_table_offset + start, end - start)
        for page_number, (start, end) in enumerate(pairwise(page_offsets), start=1)
    ]

    def decode(page_range: tuple[int, int, int]):
        return _decode_page(source, *page_range, best_effort=best_effort)

    if workers is not None and workers > 1 and len(ranges) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(decode, ranges))
    else:
        results = [decode(page_range) for page_range in ranges]

    fixups = tuple(records for (records, _) in results)
    diagnostics = tuple(diag for (_, diag) in results if diag is not None)
    logger.debug(
        "Decoded %d fixup records on %d pages",
        sum(len(records) for records in fixups),
        len(fixups),
    )
    return fixups, diagnostics


@dataclasses.dataclass(frozen=True)
class ChainLink:
    source_offset: int
    target_offset: int
    # The 32-bit value stored at the source offset.
    value: int


def resolve_chain(
    record: LXFixupRecord,
    page_data: bytes,
    page_size: int,
    *,
    byteorder: str = "<",
    page_number: int = 0,
) -> tuple[ChainLink, ...]:
    """Follow a chain of internal fixups through the page data.

    Only the head of the chain is in the Fixup Record Table. The 32-bit value at each
    source location holds the offset of the next fixup in the chain (high 12 bits)
    and the target offset of the current one (low 20 bits). All targets of a chain
    share the upper bits of the head record's target offset."""
    if not record.is_chain_head:
        raise ValueError("Record is not the head of a fixup chain")

    head = record.source_offsets[0]
    base = (record.target_offset or 0) & ~CHAIN_TARGET_MASK
    max_links = max(page_size // 4, 1)
    fmt = byteorder + "I"

    links: list[ChainLink] = []
    source_offset = head
    while True:
        if len(links) >= max_links:
            raise ChainOverflow(
                f"Fixup chain at 0x{head:x} has more than {max_links} links",
                page_number=page_number,
                source_offset=head,
            )

        if source_offset < 0 or source_offset + 4 > len(page_data):
            raise ChainOverflow(
                f"Fixup chain at 0x{head:x} has a link at 0x{source_offset:x} outside the page",
                page_number=page_number,
                source_offset=head,
            )

        (value,) = struct.unpack_from(fmt, page_data, source_offset)
        links.append(
            ChainLink(
                source_offset=source_offset,
                target_offset=base | (value & CHAIN_TARGET_MASK),
                value=value,
            )
        )

        next_offset = value >> 20
        if next_offset in (CHAIN_END, source_offset):
            break

        source_offset = next_offset

    return tuple(links)
