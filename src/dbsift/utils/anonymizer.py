import hashlib
import threading
from collections import OrderedDict
from collections.abc import Iterable, Mapping
from typing import Any

from faker import Faker

from dbsift.constants import (
    ANONYMIZER_CACHE_SIZE,
    DEFAULT_ANONYMIZATION_SEED,
    LITERAL_PREFIX,
    NULL_PROVIDER,
)
from dbsift.exceptions import TransformError
from dbsift.logging import get_logger

logger = get_logger(__name__)


_DEFAULT_ANONYMIZATION_PATTERNS: dict[str, str] = {
    # Contact information
    "email": "email",
    "phone": "phone_number",
    "mobile": "phone_number",
    "fax": "phone_number",
    # User identity
    "username": "user_name",
    "user_name": "user_name",
    # Professional
    "company": "company",
    "employer": "company",
    "job_title": "job",
    "salary": "random_int",
    # Network
    "ipv6": "ipv6",
    "ip_address": "ipv4",
    "mac_address": "mac_address",
    # Personal names
    "first_name": "first_name",
    "firstname": "first_name",
    "last_name": "last_name",
    "lastname": "last_name",
    "full_name": "name",
    "fullname": "name",
    "name": "name",
    # Address fields
    "address": "address",
    "street": "street_address",
    "city": "city",
    "zipcode": "zipcode",
    "zip": "zipcode",
    "postal": "zipcode",
    # Identity documents
    "ssn": "ssn",
    "credit_card": "credit_card_number",
    "card_number": "credit_card_number",
    "passport": "passport_number",
    "license_number": "license_plate",
    # Financial
    "iban": "iban",
    "bank_account": "bban",
    "account_number": "bban",
    "swift": "swift",
    # Personal data
    "date_of_birth": "date_of_birth",
    "birth_date": "date_of_birth",
    "birthdate": "date_of_birth",
    "dob": "date_of_birth",
    # Web
    "website": "url",
    "url": "url",
}

# Fields to NULL instead of fake (security-sensitive)
_SECURITY_NULL_PATTERNS: list[str] = [
    "password",
    "passwd",
    "pwd",
    "hash",
    "salt",
    "token",
    "secret",
    "api_key",
    "apikey",
    "session_id",
    "private_key",
    "privatekey",
    "encryption_key",
    "nonce",
    "signature",
    "certificate",
]


def detect_provider(column: str) -> str | None:
    """
    Guess how to anonymize a column from its name.

    Returns:
        NULL_PROVIDER for security-sensitive columns, a Faker provider name
        for personal data, or None when the column looks harmless
    """
    col_lower = column.lower()
    for pattern in _SECURITY_NULL_PATTERNS:
        if pattern in col_lower:
            return NULL_PROVIDER
    for pattern, method in _DEFAULT_ANONYMIZATION_PATTERNS.items():
        if pattern in col_lower:
            return method
    return None


class DeterministicAnonymizer:
    """
    Anonymizes values deterministically - same input always produces same output.

    The same value in the same kind of column is replaced the same way in
    every table and every run with the same seed, so equal values stay equal
    after anonymization. Key columns used to select related rows are never
    touched, which keeps the subset referentially consistent.

    Used as the transform stage of a dump: ``anonymize_row(table, row)``
    returns a new row and never mutates its input.
    """

    def __init__(
        self,
        seed: str = DEFAULT_ANONYMIZATION_SEED,
        auto: bool = False,
        protected_columns: Mapping[str, Iterable[str]] | None = None,
        cache_size: int = ANONYMIZER_CACHE_SIZE,
    ):
        """
        Args:
            seed: Global seed for deterministic anonymization
            auto: Also anonymize columns whose names look sensitive
            protected_columns: Table -> columns that must never change
                (primary keys and relationship keys)
            cache_size: Replacements kept in memory, least recently used first out
        """
        logger.info("Initializing anonymizer", seed=seed[:20] + "...", auto=auto)
        self.global_seed = seed
        self.auto = auto
        self.fake = Faker()
        self.fields: dict[str, dict[str, str]] = {}
        self.protected: dict[str, set[str]] = {
            table: set(columns) for table, columns in (protected_columns or {}).items()
        }
        self._cache: OrderedDict[tuple[str, str], Any] = OrderedDict()
        self._cache_size = cache_size
        self._plans: dict[tuple[str, tuple[str, ...]], dict[str, str]] = {}
        self._lock = threading.Lock()

    def configure(self, fields: Mapping[str, Mapping[str, str]]) -> None:
        """
        Set explicit per-table column mappings.

        Args:
            fields: Table -> {column: provider}. A provider is a Faker method
                name, "null", or "literal:<value>" for a fixed replacement.

        Raises:
            ValueError: If a provider is not a Faker method
        """
        unknown = []
        for table, columns in fields.items():
            for column, provider in columns.items():
                if provider.startswith(LITERAL_PREFIX) or provider == NULL_PROVIDER:
                    continue
                if not callable(getattr(self.fake, provider, None)):
                    unknown.append(f"{table}.{column}: {provider}")
                if column in self.protected.get(table, ()):
                    logger.warning(
                        "Key column will not be anonymized", table=table, column=column
                    )
        if unknown:
            raise ValueError(f"Unknown Faker provider(s): {', '.join(unknown)}")

        self.fields = {table: dict(columns) for table, columns in fields.items()}
        self._plans.clear()
        logger.info(
            "Anonymizer configured",
            field_count=sum(len(columns) for columns in self.fields.values()),
        )

    def provider_for(self, table: str, column: str) -> str | None:
        """Return how ``table.column`` is anonymized, or None to keep it."""
        if column in self.protected.get(table, ()):
            return None
        explicit = self.fields.get(table, {}).get(column)
        if explicit is not None:
            return explicit
        if self.auto:
            return detect_provider(column)
        return None

    def _plan(self, table: str, columns: tuple[str, ...]) -> dict[str, str]:
        key = (table, columns)
        plan = self._plans.get(key)
        if plan is None:
            plan = {}
            for column in columns:
                provider = self.provider_for(table, column)
                if provider is not None:
                    plan[column] = provider
            self._plans[key] = plan
        return plan

    def anonymize_value(self, value: Any, table: str, column: str, provider: str) -> Any:
        """
        Replace one value using ``provider``.

        Determinism:
            - Uses SHA-256 of (global_seed:provider:value) as the Faker seed
            - Recent results are cached per (provider, value)

        Raises:
            TransformError: If the provider fails
        """
        if value is None or provider == NULL_PROVIDER:
            return None
        if provider.startswith(LITERAL_PREFIX):
            return provider[len(LITERAL_PREFIX) :]

        cache_key = (provider, str(value))
        with self._lock:
            if cache_key in self._cache:
                self._cache.move_to_end(cache_key)
                return self._cache[cache_key]

            hash_input = f"{self.global_seed}:{provider}:{value}".encode()
            seed_int = int.from_bytes(hashlib.sha256(hash_input).digest()[:8], "big")
            self.fake.seed_instance(seed_int)
            try:
                anonymized = getattr(self.fake, provider)()
            except (AttributeError, TypeError, ValueError) as e:
                raise TransformError(f"provider '{provider}' failed: {e}", table, column) from e

            self._cache[cache_key] = anonymized
            if len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return anonymized

    def anonymize_row(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """
        Anonymize all sensitive fields in a row.

        Returns:
            New dictionary with sensitive fields anonymized
        """
        plan = self._plan(table, tuple(row))
        if not plan:
            return dict(row)

        result = {}
        for column, value in row.items():
            provider = plan.get(column)
            result[column] = (
                value if provider is None else self.anonymize_value(value, table, column, provider)
            )
        return result

    def get_statistics(self) -> dict[str, int]:
        return {
            "cache_size": len(self._cache),
            "configured_fields": sum(len(columns) for columns in self.fields.values()),
        }
