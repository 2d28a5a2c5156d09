import struct
from pathlib import Path
import pytest
from lxmod.formats import ImageImport, LXImage, detect_image
from lxmod.formats.exceptions import (
    ChainOverflow,
    InvalidVirtualAddressError,
    LayoutError,
    LXHeaderNotFoundError,
    ObjectNotFoundError,
    TruncatedRecord,
    UnsupportedFixupVariant,
)
from lxmod.formats.lx import (
    LXImageHeader,
    LXObjectFlags,
    LXObjectTableEntry,
    LXPageFlags,
    LXPageTableEntry,
    PageTableVariant,
)
from lxmod.formats.lxfixup import (
    InternalTarget,
    decode_page_fixups,
    read_fixup_page_table,
)
from lxmod.formats.mz import ImageDosHeader
from lxmod.formats.source import ByteSource
from .lx_builder import ObjectSpec, PageSpec, build_module, mz_stub, pascal

CODE = LXObjectFlags.READABLE | LXObjectFlags.EXECUTABLE | LXObjectFlags.BIG_DEFAULT
DATA = LXObjectFlags.READABLE | LXObjectFlags.WRITABLE
CONST = LXObjectFlags.READABLE

# Internal 32-bit offset fixup at 0x20 pointing to object 2, offset 0x10.
INTERNAL_FIXUP = bytes([0x07, 0x00]) + struct.pack("<hBH", 0x20, 2, 0x10)
# Head of a chain at 0x40 with target offset 0.
CHAIN_FIXUP = bytes([0x07, 0x18]) + struct.pack("<hBI", 0x40, 1, 0)
# Import of DOSCALLS.138 at 0x4
ORDINAL_IMPORT = bytes([0x07, 0x01]) + struct.pack("<hBH", 0x4, 1, 138)
# Import of KBDCALLS.DosWrite at 0x8 and 0xc
NAME_IMPORT = bytes([0x27, 0x02]) + struct.pack("<BBHhh", 2, 2, 1, 0x8, 0xC)


def code_page() -> bytes:
    page = bytearray(b"\xcc" * 0x100)
    struct.pack_into("<I", page, 0x40, (0x80 << 20) | 0x100)
    struct.pack_into("<I", page, 0x80, (0xFFF << 20) | 0x120)
    return bytes(page)


def sample_objects() -> list[ObjectSpec]:
    return [
        ObjectSpec(
            base=0x10000,
            virtual_size=0x180,
            flags=CODE,
            pages=[
                PageSpec(data=code_page(), fixups=INTERNAL_FIXUP + CHAIN_FIXUP),
                PageSpec(data=b"hello\x00"),
            ],
        ),
        ObjectSpec(
            base=0x20000,
            virtual_size=0x200,
            flags=DATA,
            pages=[PageSpec(data=b"data", fixups=ORDINAL_IMPORT + NAME_IMPORT)],
        ),
    ]


def sample_module(**kwargs) -> bytes:
    options = {
        "import_modules": (b"DOSCALLS", b"KBDCALLS"),
        "import_procedures": b"\x00" + pascal(b"DosWrite"),
        "resident_names": ((b"SAMPLE", 0), (b"EXPORTED", 1)),
        "header": {"eip_object_nb": 1, "eip": 0x10},
    }
    options |= kwargs
    return build_module(sample_objects(), **options)


@pytest.fixture(name="sample")
def fixture_sample() -> LXImage:
    return LXImage.from_source(ByteSource(sample_module()))


def test_le_single_page_module():
    """LE module with one executable object on one page and no fixups."""
    data = build_module(
        [
            ObjectSpec(
                base=0x10000,
                virtual_size=0x100,
                flags=LXObjectFlags.READABLE | LXObjectFlags.EXECUTABLE,
                pages=[PageSpec(data=b"\x90" * 0x100)],
            )
        ],
        signature=b"LE",
    )
    img = LXImage.from_source(ByteSource(data))

    assert img.header.signature.name == "LE"
    assert len(img.objects) == 1
    assert img.objects[0].page_table_index == 1
    assert img.objects[0].page_count == 1
    assert len(img.page_table) == 1
    assert img.page_table[0].variant == PageTableVariant.LE
    assert img.page_table[0].offset == 1
    assert img.page_table[0].flags == LXPageFlags.LEGAL
    assert img.get_fixups(1) == ()
    assert img.fixup_count == 0
    assert img.get_page_data(1) == b"\x90" * 0x100


def test_le_short_last_page():
    data = build_module(
        [
            ObjectSpec(
                base=0x10000,
                virtual_size=0x200,
                pages=[PageSpec(data=b"a"), PageSpec(data=b"b" * 0x20)],
            )
        ],
        signature=b"LE",
    )
    img = LXImage.from_source(ByteSource(data))
    assert img.get_page_data(1) == b"a" + b"\x00" * 0xFF
    assert img.get_page_data(2) == b"b" * 0x20
    assert img.read(0x10100, 0x21) == b"b" * 0x20 + b"\x00"


def test_objects(sample: LXImage):
    assert [obj.number for obj in sample.objects] == [1, 2]
    assert sample.get_object(2).reloc_base_addr == 0x20000
    assert [page.number for page in sample.get_object_page_table(1)] == [1, 2]
    assert [page.number for page in sample.get_object_page_table(2)] == [3]
    assert sample.get_object_for_page(2).number == 1
    assert sample.get_object_for_page(3).number == 2

    with pytest.raises(ObjectNotFoundError):
        sample.get_object(0)

    with pytest.raises(ObjectNotFoundError):
        sample.get_object(3)


def test_pages(sample: LXImage):
    assert sample.get_page_data(1) == code_page()
    assert sample.get_page_data(2) == b"hello\x00"
    assert sample.get_page_data(3) == b"data"

    with pytest.raises(IndexError):
        sample.get_page_data(0)

    with pytest.raises(IndexError):
        sample.get_fixups(4)


def test_page_data_is_a_copy():
    """The module does not hold on to the buffer it was decoded from."""
    buffer = bytearray(sample_module())
    img = LXImage.from_source(ByteSource(bytes(buffer)))
    assert isinstance(img.get_page_data(3), bytes)
    assert not hasattr(img, "data")


def test_object_page_flags(sample: LXImage):
    # Object 2 is two pages long but only one is in the page table.
    assert sample.object_page_flags(1) == (LXPageFlags.LEGAL, LXPageFlags.LEGAL)
    assert sample.object_page_flags(2) == (LXPageFlags.LEGAL, LXPageFlags.ZERO_FILLED)


def test_fixups(sample: LXImage):
    assert sample.fixup_count == 4
    assert sample.fixup_page_table == (0, 16, 16, 33)

    (internal, chain) = sample.get_fixups(1)
    assert internal.target == InternalTarget(object_number=2, offset=0x10)
    assert internal.source_offsets == (0x20,)
    assert chain.is_chain_head
    assert sample.get_fixups(2) == ()
    assert len(sample.get_fixups(3)) == 2


def test_chain_links(sample: LXImage):
    ((record, links, error),) = list(sample.iter_chain_links(1))
    assert record.source_offsets == (0x40,)
    assert error is None
    assert [(link.source_offset, link.target_offset) for link in links] == [
        (0x40, 0x100),
        (0x80, 0x120),
    ]
    assert not list(sample.iter_chain_links(3))


def cyclic_chain_module() -> bytes:
    """One page with a looping chain at 0x10 followed by a good chain at 0x40."""
    page = bytearray(b"\xcc" * 0x100)
    struct.pack_into("<I", page, 0x10, (0x20 << 20) | 0x1)
    struct.pack_into("<I", page, 0x20, (0x10 << 20) | 0x2)
    struct.pack_into("<I", page, 0x40, (0xFFF << 20) | 0x100)
    fixups = (
        bytes([0x07, 0x18])
        + struct.pack("<hBI", 0x10, 1, 0)
        + bytes([0x07, 0x18])
        + struct.pack("<hBI", 0x40, 1, 0)
    )
    return build_module(
        [
            ObjectSpec(
                base=0x10000,
                virtual_size=0x100,
                flags=CODE,
                pages=[PageSpec(data=bytes(page), fixups=fixups)],
            )
        ]
    )


def test_chain_overflow_does_not_stop_later_chains():
    img = LXImage.from_source(ByteSource(cyclic_chain_module()))
    ((bad, bad_links, error), (good, good_links, good_error)) = list(
        img.iter_chain_links(1)
    )

    assert bad.source_offsets == (0x10,)
    assert bad_links == ()
    assert isinstance(error, ChainOverflow)
    assert error.page_number == 1
    assert error.source_offset == 0x10

    assert good.source_offsets == (0x40,)
    assert good_error is None
    assert [(link.source_offset, link.target_offset) for link in good_links] == [
        (0x40, 0x100)
    ]


def test_imports(sample: LXImage):
    assert sample.import_modules == ("DOSCALLS", "KBDCALLS")
    assert sample.import_procedures == {1: "DosWrite"}
    assert list(sample.imports) == [
        ImageImport(addr=0x20004, module="DOSCALLS", ordinal=138),
        ImageImport(addr=0x20008, module="KBDCALLS", name="DosWrite"),
        ImageImport(addr=0x2000C, module="KBDCALLS", name="DosWrite"),
    ]


def test_resident_names(sample: LXImage):
    assert sample.resident_names == (("SAMPLE", 0), ("EXPORTED", 1))
    assert sample.module_name == "SAMPLE"


def test_addresses(sample: LXImage):
    assert sample.imagebase == 0x10000
    assert sample.entry == 0x10010
    assert sample.get_relative_addr(0x10000) == (1, 0)
    assert sample.get_relative_addr(0x2000C) == (2, 0xC)

    for addr in (0xFFFF, 0x10180, 0x20200):
        assert sample.is_valid_vaddr(addr) is False
        with pytest.raises(InvalidVirtualAddressError):
            sample.get_relative_addr(addr)


def test_virtual_reads(sample: LXImage):
    assert sample.read(0x10000, 4) == b"\xcc" * 4
    assert sample.read_string(0x10100) == b"hello"
    assert sample.read(0x20000, 4) == b"data"
    # Beyond the object's only page
    assert sample.read(0x201F0, 0x10) == b"\x00" * 0x10

    (_, remaining) = sample.seek(0x10100)
    assert remaining == 0x80


def test_regions(sample: LXImage):
    (code,) = sample.get_code_regions()
    assert code.addr == 0x10000
    assert code.size == 0x180

    (data,) = sample.get_data_regions()
    assert data.range == range(0x20000, 0x20200)

    assert not list(sample.get_const_regions())


def test_no_entry_point():
    img = LXImage.from_source(ByteSource(sample_module(header={})))
    assert img.entry is None


def test_zero_filled_and_iterated_pages():
    iterated = struct.pack("<HH", 0x10, 2) + b"ab"
    data = build_module(
        [
            ObjectSpec(
                base=0x10000,
                virtual_size=0x300,
                flags=CONST,
                pages=[
                    PageSpec(flags=LXPageFlags.ZERO_FILLED),
                    PageSpec(data=iterated, flags=LXPageFlags.ITERATED),
                    PageSpec(data=b"\x12\x34", flags=LXPageFlags.COMPRESSED),
                ],
            )
        ]
    )
    img = LXImage.from_source(ByteSource(data))
    assert img.get_page_data(1) == b""
    assert img.get_page_data(2) == iterated
    assert img.get_page_data(3) == b"\x12\x34"

    assert img.read(0x10000, 0x100) == b"\x00" * 0x100
    assert img.read(0x10100, 0x22) == b"ab" * 0x10 + b"\x00\x00"
    # Compressed pages are not expanded.
    assert img.read(0x10200, 2) == b"\x00\x00"

    (const,) = img.get_const_regions()
    assert const.addr == 0x10000


def test_page_offset_shift():
    data = build_module(sample_objects(), page_shift=4)
    img = LXImage.from_source(ByteSource(data))
    assert img.header.page_shift == 4
    assert [page.offset for page in img.page_table] == [0, 0x10, 0x11]
    assert img.get_page_data(2) == b"hello\x00"
    assert img.get_page_data(3) == b"data"


def test_big_endian_module():
    objects = [
        ObjectSpec(
            base=0x10000,
            virtual_size=0x100,
            pages=[
                PageSpec(
                    data=b"\x01\x02",
                    fixups=bytes([0x07, 0x00]) + struct.pack(">hBH", 0x20, 1, 0x1234),
                )
            ],
        )
    ]
    img = LXImage.from_source(ByteSource(build_module(objects, byteorder=">")))
    assert img.byteorder == ">"
    assert img.objects[0].reloc_base_addr == 0x10000
    assert img.get_fixups(1)[0].target == InternalTarget(object_number=1, offset=0x1234)


def test_without_fixup_tables():
    data = build_module(sample_objects()[:1], with_fixups=False)
    img = LXImage.from_source(ByteSource(data))
    assert img.fixup_page_table == ()
    assert img.fixups == ((), ())


def test_empty_object():
    """Objects without pages do not take part in the page table."""
    objects = sample_objects()
    objects.insert(1, ObjectSpec(base=0x18000, virtual_size=0x100))
    img = LXImage.from_source(ByteSource(build_module(objects)))
    assert img.get_object_page_table(2) == ()
    assert img.object_page_flags(2) == (LXPageFlags.ZERO_FILLED,)
    assert img.read(0x18000, 4) == b"\x00" * 4
    assert img.get_object_for_page(3).number == 3


def test_page_gap():
    objects = sample_objects()
    objects[1].page_table_index = 4
    with pytest.raises(LayoutError):
        LXImage.from_source(ByteSource(build_module(objects)))


def test_page_overlap():
    objects = sample_objects()
    objects[1].page_table_index = 2
    with pytest.raises(LayoutError):
        LXImage.from_source(ByteSource(build_module(objects)))


def test_page_not_in_any_object():
    data = sample_module(header={"nb_objects_in_module": 1})
    with pytest.raises(LayoutError):
        LXImage.from_source(ByteSource(data))


def test_page_count_mismatch():
    data = sample_module(header={"module_number_of_pages": 2})
    with pytest.raises(LayoutError):
        LXImage.from_source(ByteSource(data))


def test_table_without_offset():
    with pytest.raises(LayoutError):
        LXImage.from_source(ByteSource(sample_module(header={"object_table_off": 0})))

    with pytest.raises(LayoutError):
        LXImage.from_source(
            ByteSource(sample_module(header={"fixup_record_table_offset": 0}))
        )


def test_bad_fixup_strict_and_best_effort():
    objects = sample_objects()
    objects[0].pages[0].fixups = INTERNAL_FIXUP + bytes([0x0B, 0x00, 0x00, 0x00])
    data = build_module(objects)

    with pytest.raises(UnsupportedFixupVariant):
        LXImage.from_source(ByteSource(data))

    img = LXImage.from_source(ByteSource(data), best_effort=True)
    assert len(img.get_fixups(1)) == 1
    assert len(img.get_fixups(3)) == 2
    assert [diag.page_number for diag in img.diagnostics] == [1]


def test_workers(sample: LXImage):
    img = LXImage.from_source(ByteSource(sample_module()), workers=4)
    assert img.fixups == sample.fixups
    assert img == sample


def table_regions(data: bytes):
    """Absolute offset, size and decoder of each table in the sample module."""
    header, _ = LXImageHeader.from_source(ByteSource(data), 0)
    page_table_size = header.module_number_of_pages * 8
    fixup_records = header.import_module_table_offset - header.fixup_record_table_offset
    return {
        "header": (0, 0xB0, lambda src: LXImageHeader.from_source(src, 0)),
        "object table": (
            header.object_table_off,
            header.nb_objects_in_module * 24,
            lambda src: LXObjectTableEntry.from_source(
                src, header.object_table_off, header.nb_objects_in_module
            ),
        ),
        "page table": (
            header.object_page_table_offset,
            page_table_size,
            lambda src: LXPageTableEntry.from_source(
                src,
                header.object_page_table_offset,
                header.module_number_of_pages,
                PageTableVariant.LX,
            ),
        ),
        "fixup page table": (
            header.fixup_page_table_offset,
            (header.module_number_of_pages + 1) * 4,
            lambda src: read_fixup_page_table(
                src, header.fixup_page_table_offset, header.module_number_of_pages
            ),
        ),
        "fixup records": (
            header.fixup_record_table_offset,
            fixup_records,
            lambda src: decode_page_fixups(
                src, header.fixup_record_table_offset, fixup_records
            ),
        ),
        "module": (0, len(data), lambda src: LXImage.from_source(src)),
    }


@pytest.mark.parametrize(
    "table",
    (
        "header",
        "object table",
        "page table",
        "fixup page table",
        "fixup records",
        "module",
    ),
)
def test_truncated_table(table: str):
    """Cutting one byte from the end of a table is never a short read."""
    data = sample_module()
    (offset, size, decode) = table_regions(data)[table]

    decode(ByteSource(data))

    with pytest.raises(TruncatedRecord):
        decode(ByteSource(data[: offset + size - 1]))


def test_mz_stub(tmp_path: Path):
    data = sample_module(prefix=mz_stub(0x80))
    filename = tmp_path / "sample.exe"
    filename.write_bytes(data)

    img = detect_image(filename)
    assert isinstance(img, LXImage)
    assert img.header_offset == 0x80
    assert img.mz_header is not None
    assert img.mz_header.e_lfanew == 0x80
    assert img.mz_header.stub_size == 0x80
    assert img.filepath == filename
    assert img.read_string(0x10100) == b"hello"

    mz_header, _ = ImageDosHeader.from_source(ByteSource(data), 0)
    assert LXImage.from_memory(data, mz_header, filename) == img


def test_detect_bare_module(tmp_path: Path):
    filename = tmp_path / "sample.dll"
    filename.write_bytes(sample_module())
    img = detect_image(filename, workers=2)
    assert img.mz_header is None
    assert img.fixup_count == 4


def test_detect_other_formats(tmp_path: Path):
    filename = tmp_path / "other.exe"

    filename.write_bytes(mz_stub(0x40, size=0x40) + b"PE\x00\x00")
    with pytest.raises(NotImplementedError):
        detect_image(filename)

    filename.write_bytes(mz_stub(0x40))
    with pytest.raises(LXHeaderNotFoundError):
        detect_image(filename)

    filename.write_bytes(b"\x7fELF" + b"\x00" * 0x100)
    with pytest.raises(LXHeaderNotFoundError):
        detect_image(filename)
