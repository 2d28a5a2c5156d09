#!/usr/bin/env python3

import argparse
import logging
from pathlib import Path
from typing import Optional

import colorama
from pydantic import ValidationError
import ruamel.yaml
import lxmod
from lxmod.config import DecodeConfig, LxdumpFile
from lxmod.formats import LXImage, detect_image
from lxmod.formats.exceptions import (
    LXDecodeError,
    ObjectNotFoundError,
)
from lxmod.logging import argparse_add_logging_args, argparse_parse_logging

logger = logging.getLogger(__name__)
colorama.just_fix_windows_console()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    def worker_count(value) -> int:
        """Helper method for argparse, --workers parameter"""
        count = int(value)
        if count < 1:
            raise argparse.ArgumentTypeError("must be at least 1")
        return count

    parser = argparse.ArgumentParser(
        allow_abbrev=False,
        description="Decode the headers, tables and fixup records of an LX/LE/LC executable.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {lxmod.VERSION}"
    )
    parser.add_argument("file", metavar="<file>", type=Path, help="Module to decode")
    parser.add_argument("--objects", action="store_true", help="List the object table")
    parser.add_argument("--pages", action="store_true", help="List the page table")
    parser.add_argument(
        "--fixups", action="store_true", help="List the fixup records of each page"
    )
    parser.add_argument(
        "--chains",
        action="store_true",
        help="Follow chained fixups through the page data",
    )
    parser.add_argument(
        "--imports", action="store_true", help="List the locations of imports"
    )
    parser.add_argument(
        "--best-effort",
        action="store_true",
        default=None,
        help="Keep going when a page's fixup records cannot be decoded",
    )
    parser.add_argument(
        "--workers",
        metavar="<count>",
        type=worker_count,
        help="Decode fixup records with a pool of this many threads",
    )
    parser.add_argument(
        "--config", metavar="<file>", type=Path, help="YAML file with decode options"
    )
    parser.add_argument(
        "--no-color", "-n", action="store_true", help="Do not color the output"
    )
    argparse_add_logging_args(parser)

    args = parser.parse_args(argv)
    argparse_parse_logging(args)

    return args


def load_decode_config(args: argparse.Namespace) -> DecodeConfig:
    """Options from the config file, overridden by the command line."""
    config = DecodeConfig.default()
    if args.config is not None:
        config = LxdumpFile.from_file(args.config).decode

    updates = {}
    if args.best_effort is not None:
        updates["best_effort"] = args.best_effort
    if args.workers is not None:
        updates["workers"] = args.workers
    if args.chains:
        updates["resolve_chains"] = True

    return config.model_copy(update=updates)


class Printer:
    def __init__(self, is_plain: bool):
        self.is_plain = is_plain

    def title(self, text: str):
        if self.is_plain:
            print(f"\n{text}")
        else:
            print(f"\n{colorama.Fore.LIGHTWHITE_EX}{text}{colorama.Style.RESET_ALL}")

    def error(self, text: str):
        if self.is_plain:
            print(f"error: {text}")
        else:
            print(f"{colorama.Fore.RED}error: {colorama.Style.RESET_ALL}{text}")

    def warning(self, text: str):
        if self.is_plain:
            print(f"warning: {text}")
        else:
            print(f"{colorama.Fore.YELLOW}warning: {colorama.Style.RESET_ALL}{text}")


def print_summary(img: LXImage, out: Printer):
    header = img.header
    out.title(f"{img.filepath}")
    endian = "big" if header.byte_ordering else "little"
    print(f"  format:       {header.signature.name} ({endian} endian)")
    if img.mz_header is not None:
        stub_size = img.mz_header.stub_size
        print(f"  header at:    0x{img.header_offset:x} (DOS stub {stub_size} bytes)")
    if img.module_name:
        print(f"  module name:  {img.module_name}")
    print(f"  flags:        0x{header.module_flags:08x}")
    print(f"  page size:    0x{header.page_size:x}")
    print(f"  objects:      {len(img.objects)}")
    print(f"  pages:        {len(img.page_table)}")
    print(f"  fixups:       {img.fixup_count}")
    try:
        if img.entry is not None:
            print(f"  entry:        0x{img.entry:x}")
    except ObjectNotFoundError:
        out.warning(f"entry point is in missing object {header.eip_object_nb}")

    for diag in img.diagnostics:
        out.warning(str(diag.error))


def print_objects(img: LXImage, out: Printer):
    out.title("Objects")
    for obj in img.objects:
        print(
            f"  #{obj.number:<3} base 0x{obj.reloc_base_addr:08x} size 0x{obj.virtual_size:08x}"
            f" flags 0x{obj.flags:04x} pages {obj.page_table_index}+{obj.page_count}"
        )


def print_pages(img: LXImage, out: Printer):
    out.title("Pages")
    for entry in img.page_table:
        print(
            f"  {entry.number:>5} offset 0x{entry.offset:08x} size 0x{entry.size:04x} {entry.flags.name}"
        )


def print_fixups(img: LXImage, out: Printer, resolve_chains: bool):
    out.title("Fixups")
    for page_number in range(1, len(img.page_table) + 1):
        records = img.get_fixups(page_number)
        if not records:
            continue

        print(f"  page {page_number}: {len(records)} records")
        for record in records:
            offsets = ", ".join(f"0x{ofs & 0xFFFF:03x}" for ofs in record.source_offsets)
            print(
                f"    {record.kind.name:<16} {record.target_type.name:<14} [{offsets}] -> {record.target}"
            )

        if not resolve_chains:
            continue

        for record, links, error in img.iter_chain_links(page_number):
            if error is not None:
                out.warning(f"page {page_number}: {error}")
                continue

            chain = " ".join(
                f"0x{link.source_offset:03x}->0x{link.target_offset:x}" for link in links
            )
            print(f"    chain at 0x{record.source_offsets[0]:03x}: {chain}")


def print_imports(img: LXImage, out: Printer):
    out.title("Imports")
    for imp in img.imports:
        what = imp.name if imp.name else f"#{imp.ordinal}"
        print(f"  0x{imp.addr:08x} {imp.module}.{what}")


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    out = Printer(is_plain=args.no_color)

    try:
        config = load_decode_config(args)
    except (OSError, ValidationError, ruamel.yaml.YAMLError) as ex:
        out.error(f"Cannot load config file {args.config}: {ex}")
        return 1

    try:
        img = detect_image(
            args.file, best_effort=config.best_effort, workers=config.workers
        )
    except FileNotFoundError:
        out.error(f"File not found: {args.file}")
        return 1
    except NotImplementedError as ex:
        out.error(f"{args.file}: {ex}")
        return 1
    except LXDecodeError as ex:
        logger.debug("Decode failed", exc_info=True)
        out.error(f"{args.file}: {ex}")
        return 1

    print_summary(img, out)

    if args.objects:
        print_objects(img, out)

    if args.pages:
        print_pages(img, out)

    if args.fixups or config.resolve_chains:
        print_fixups(img, out, config.resolve_chains)

    if args.imports:
        print_imports(img, out)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
