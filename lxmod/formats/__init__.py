from .detect import detect_image
from .image import Image, ImageImport, ImageRegion
from .lx import (
    LXImage,
    LXImageHeader,
    LXObjectTableEntry,
    LXPageTableEntry,
    LXPageFlags,
    LXSignature,
    PageTableVariant,
)
from .lxfixup import ChainLink, LXFixupRecord
from .mz import ImageDosHeader
from .source import ByteSource
