from pathlib import Path
from typing import Optional

from .exceptions import LXHeaderNotFoundError
from .lx import LXImage, LXImageHeader
from .mz import ImageDosHeader
from .source import ByteSource


def detect_image(
    filepath: Path, *, best_effort: bool = False, workers: Optional[int] = None
) -> LXImage:
    source = ByteSource.from_file(filepath)

    if ImageDosHeader.taste(source, offset=0):
        mz_header, _ = ImageDosHeader.from_source(source, offset=0)

        match source.data[mz_header.e_lfanew : mz_header.e_lfanew + 2]:
            case b"LX" | b"LE" | b"LC":
                return LXImage.from_source(
                    source,
                    mz_header.e_lfanew,
                    filepath=filepath,
                    mz_header=mz_header,
                    best_effort=best_effort,
                    workers=workers,
                )
            case b"PE":
                raise NotImplementedError("PE file format not implemented")
            case b"NE":
                raise NotImplementedError("NE file format not implemented")
            case _:
                raise LXHeaderNotFoundError(
                    f"{filepath}: DOS program without a linear executable header"
                )

    if LXImageHeader.taste(source, offset=0):
        return LXImage.from_source(
            source, 0, filepath=filepath, best_effort=best_effort, workers=workers
        )

    raise LXHeaderNotFoundError(f"{filepath}: unknown file format")
