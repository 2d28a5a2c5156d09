from pathlib import Path
from typing import Iterator
import pytest

from lxmod.formats import LXImage, detect_image


def pytest_addoption(parser):
    """Allow the option to run tests against a sample binary."""
    parser.addoption(
        "--lxfile", action="store", help="Path to an LX, LE or LC executable"
    )


@pytest.fixture(name="lxfile", scope="session")
def fixture_lxfile(pytestconfig) -> Iterator[LXImage]:
    filename = pytestconfig.getoption("--lxfile")

    # Skip this if we have not provided the path to a module.
    if filename is None:
        pytest.skip(allow_module_level=True, reason="No path to an LX module")

    image = detect_image(Path(filename), best_effort=True)
    assert isinstance(image, LXImage)
    yield image
