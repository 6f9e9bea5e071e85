"""
dbsift - Copy referentially-consistent, anonymized subsets of a database.

Reads a configurable subset of every table from a source database, streams
the rows concurrently through an optional anonymizer, and writes them to a
SQL dump or to another database of the same engine.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
