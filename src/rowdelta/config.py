"""
Table properties and environment configuration for rowdelta
"""

import os
from typing import Any, Dict, Mapping


class TableProperties:
    """Known table property keys and their defaults"""

    COMMIT_NUM_RETRIES = "commit.retry.num-retries"
    COMMIT_NUM_RETRIES_DEFAULT = 4

    COMMIT_MIN_RETRY_WAIT_MS = "commit.retry.min-wait-ms"
    COMMIT_MIN_RETRY_WAIT_MS_DEFAULT = 10

    COMMIT_MAX_RETRY_WAIT_MS = "commit.retry.max-wait-ms"
    COMMIT_MAX_RETRY_WAIT_MS_DEFAULT = 2000

    READ_PARALLELISM = "read.parallelism"
    READ_PARALLELISM_DEFAULT = 0

    PARQUET_COMPRESSION = "write.parquet.compression-codec"
    PARQUET_COMPRESSION_DEFAULT = "zstd"


LOCK_TIMEOUT_ENV = "ROWDELTA_LOCK_TIMEOUT"
LOCK_TIMEOUT_DEFAULT = 30.0


def property_as_int(properties: Mapping[str, Any], key: str, default: int) -> int:
    """Read an integer table property, falling back to ``default`` when unset.

    Raises:
        ValueError: If the property is set but not an integer
    """
    value = properties.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Table property {key} must be an integer, got {value!r}") from None


def property_as_str(properties: Mapping[str, Any], key: str, default: str) -> str:
    value = properties.get(key)
    return default if value is None else str(value)


def default_properties() -> Dict[str, str]:
    """Properties written into the metadata of a newly created table"""
    return {
        TableProperties.COMMIT_NUM_RETRIES: str(TableProperties.COMMIT_NUM_RETRIES_DEFAULT),
        TableProperties.COMMIT_MIN_RETRY_WAIT_MS: str(TableProperties.COMMIT_MIN_RETRY_WAIT_MS_DEFAULT),
        TableProperties.COMMIT_MAX_RETRY_WAIT_MS: str(TableProperties.COMMIT_MAX_RETRY_WAIT_MS_DEFAULT),
    }


def lock_timeout() -> float:
    """Seconds to wait for the metadata lock, from ``ROWDELTA_LOCK_TIMEOUT``"""
    value = os.getenv(LOCK_TIMEOUT_ENV)
    if not value:
        return LOCK_TIMEOUT_DEFAULT
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{LOCK_TIMEOUT_ENV} must be a number of seconds, got {value!r}") from None
