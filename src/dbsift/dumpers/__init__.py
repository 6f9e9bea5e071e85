import dataclasses
import sys

from dbsift.dumpers.base import Dumper
from dbsift.dumpers.database import DatabaseDumper
from dbsift.dumpers.sql import SQLDumper, format_value
from dbsift.exceptions import InvalidURLError, WriteError
from dbsift.logging import get_logger
from dbsift.models import ConnOpts
from dbsift.readers import connect
from dbsift.readers.base import Reader, SQLReader
from dbsift.utils.connection import parse_database_url

logger = get_logger(__name__)

__all__ = [
    "Dumper",
    "SQLDumper",
    "DatabaseDumper",
    "format_value",
    "get_dumper",
]


def get_dumper(target: str, source: Reader, dest_opts: ConnOpts | None = None) -> Dumper:
    """
    Create the dumper for a destination.

    Args:
        target: "" or "-" for stdout, a database URL (anything containing
            "://"), or a file path for a SQL dump
        source: Reader of the source database (engine and origin of the dump)
        dest_opts: Connection options for a database destination

    Raises:
        InvalidURLError: If a destination database uses another engine
        WriteError: If the dump file cannot be opened
    """
    host, database = source.describe()

    if target in ("", "-"):
        logger.debug("Dumping to stdout")
        return SQLDumper(sys.stdout, source.db_type, host=host, database=database)

    if "://" in target:
        if parse_database_url(target).db_type != source.db_type:
            raise InvalidURLError(
                target,
                f"destination engine must match the source ({source.db_type.value})",
            )
        opts = dataclasses.replace(dest_opts or ConnOpts(dsn=target), create_missing=True)
        destination = connect(opts)
        if not isinstance(destination, SQLReader):
            destination.close()
            raise InvalidURLError(target, "destination driver cannot load data")
        logger.info("Dumping into database", engine=destination.db_type.value)
        return DatabaseDumper(destination)

    try:
        stream = open(target, "w", encoding="utf-8")
    except OSError as e:
        raise WriteError(f"Cannot open '{target}': {e}") from e
    logger.info("Dumping to file", path=target)
    return SQLDumper(stream, source.db_type, host=host, database=database, close_stream=True)
