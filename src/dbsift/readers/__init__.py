"""
Driver registry.

Drivers are registered process-wide, in order, and never removed.
connect() hands the connection options to the first driver that accepts
the address. The built-in drivers are registered on import, in this order:
PostgreSQL, MySQL, SQLite.
"""

import threading

from dbsift.exceptions import UnsupportedSourceError
from dbsift.logging import get_logger
from dbsift.models import ConnOpts
from dbsift.readers.base import Driver, Reader, SchemeDriver, SQLReader
from dbsift.readers.mysql import MySQLReader
from dbsift.readers.postgresql import PostgreSQLReader
from dbsift.readers.sqlite import SQLiteReader

logger = get_logger(__name__)

__all__ = [
    "Driver",
    "Reader",
    "SQLReader",
    "SchemeDriver",
    "register",
    "registered_drivers",
    "connect",
]

_drivers: list[Driver] = []
_drivers_lock = threading.Lock()


def register(driver: Driver) -> None:
    """Add ``driver`` after every driver registered so far."""
    if not isinstance(driver, Driver):
        raise TypeError(f"Expected a Driver, got {type(driver).__name__}")
    with _drivers_lock:
        _drivers.append(driver)
    logger.debug("Registered driver", driver=driver.name)


def registered_drivers() -> tuple[Driver, ...]:
    """Snapshot of the registered drivers, in registration order."""
    with _drivers_lock:
        return tuple(_drivers)


def connect(opts: ConnOpts) -> Reader:
    """
    Open a reader with the first registered driver that supports ``opts.dsn``.

    Raises:
        UnsupportedSourceError: If no driver accepts the address
        ConnectionError: If the selected driver cannot connect
    """
    drivers = registered_drivers()
    for driver in drivers:
        if driver.is_supported(opts.dsn):
            logger.debug("Selected driver", driver=driver.name)
            return driver.new_connection(opts)
    raise UnsupportedSourceError(opts.dsn, [driver.name for driver in drivers])


register(SchemeDriver("postgresql", ("postgres", "postgresql"), PostgreSQLReader))
register(SchemeDriver("mysql", ("mysql",), MySQLReader))
register(SchemeDriver("sqlite", ("sqlite",), SQLiteReader))
