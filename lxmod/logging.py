import argparse
import enum
import logging


class LoggingSeverity(enum.IntEnum):
    """Log levels accepted on the command line"""

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR

    @classmethod
    def from_name(cls, name: str) -> "LoggingSeverity":
        try:
            return cls[name.upper()]
        except KeyError as ex:
            raise argparse.ArgumentTypeError(f"unknown log level '{name}'") from ex


def argparse_add_logging_args(parser: argparse.ArgumentParser):
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--loglevel",
        type=LoggingSeverity.from_name,
        default=LoggingSeverity.WARNING,
        metavar="LEVEL",
        help="Logging severity: DEBUG, INFO, WARNING or ERROR (default: WARNING)",
    )
    group.add_argument(
        "--debug",
        action="store_const",
        const=LoggingSeverity.DEBUG,
        dest="loglevel",
        help="Shorthand for --loglevel DEBUG",
    )


def argparse_parse_logging(args: argparse.Namespace):
    logging.basicConfig(level=args.loglevel, format="[%(levelname)s] %(message)s")
