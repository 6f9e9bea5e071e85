DEFAULT_CONCURRENCY = 4
"""Default maximum number of tables streamed at the same time."""

DEFAULT_BUFFER_SIZE = 1000
"""Default capacity of the bounded row queue of each table pipeline."""

DEFAULT_FETCH_SIZE = 500
"""Number of rows fetched from a source cursor per round trip."""

DEFAULT_INSERT_BATCH_SIZE = 500
"""Number of rows sent per executemany() call when writing to a database."""

ANONYMIZER_CACHE_SIZE = 10_000
"""Most recently used replacements kept by the anonymizer."""

DEFAULT_READ_TIMEOUT = 300.0
"""Default timeout in seconds for a single read operation."""

DEFAULT_MAX_CONNS = 5
"""Default maximum number of open connections to the source database."""

DEFAULT_MAX_IDLE_CONNS = 2
"""Default maximum number of idle connections kept in the pool."""

DEFAULT_POSTGRESQL_PORT = 5432
"""Default port number for PostgreSQL connections."""

DEFAULT_MYSQL_PORT = 3306
"""Default port number for MySQL connections."""

DEFAULT_SUBSET_NAME = "_default"
"""Name of the implicit subset used when a table has no subset configured."""

MAX_SIMILAR_SUGGESTIONS = 3
"""Maximum number of similar suggestions to show in error messages."""

DEFAULT_ANONYMIZATION_SEED = "dbsift_default_seed"
"""Default seed value for deterministic anonymization."""

LITERAL_PREFIX = "literal:"
"""Anonymise rule prefix that replaces a value with a fixed string."""

NULL_PROVIDER = "null"
"""Anonymization provider that replaces values with NULL."""
