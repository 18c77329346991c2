"""Composite identifiers for managed resources.

Formats:
    cluster, firewall, backup config:   {cluster_id}
    user, database:                     {cluster_id}/{name}
    extension:                          {cluster_id}/{extension}/{database}
    grant:                              {cluster_id}/{username}/{database}

Parsing is strict: the segment count must match exactly, no segment may
be empty and the cluster id must be a positive integer. Nothing is
silently truncated.
"""

from __future__ import annotations

SEPARATOR = "/"

USER_FORMAT = ("cluster_id", "username")
DATABASE_FORMAT = ("cluster_id", "database_name")
EXTENSION_FORMAT = ("cluster_id", "extension", "database")
GRANT_FORMAT = ("cluster_id", "username", "database")


class IdentifierError(Exception):
    """Raised when a composite identifier is malformed."""

    pass


def format_id(cluster_id: int, *parts: str) -> str:
    """Build a composite identifier from a cluster id and key parts."""
    return SEPARATOR.join([str(cluster_id), *parts])


def _expected(fields: tuple[str, ...]) -> str:
    return SEPARATOR.join(fields)


def parse_cluster_id(raw: str | int) -> int:
    """Parse a bare cluster identifier.

    Raises:
        IdentifierError: If the value is not a positive integer.
    """
    if isinstance(raw, bool):
        raise IdentifierError(f"invalid cluster ID {raw!r}: expected a positive integer")
    if isinstance(raw, int):
        value = raw
    else:
        text = raw.strip()
        # isdigit alone also accepts non-ASCII digits such as "²" or "٤"
        if not (text.isascii() and text.isdigit()):
            raise IdentifierError(f"invalid cluster ID {raw!r}: expected a positive integer")
        value = int(text)
    if value <= 0:
        raise IdentifierError(f"invalid cluster ID {raw!r}: expected a positive integer")
    return value


def parse_composite(raw: str, fields: tuple[str, ...]) -> tuple[int | str, ...]:
    """Split a composite identifier into (cluster_id, *parts).

    Args:
        raw: Identifier such as "42/app".
        fields: Names of the expected segments, first being cluster_id.

    Raises:
        IdentifierError: On wrong segment count, empty segments or an
            invalid cluster id.
    """
    if not isinstance(raw, str) or not raw:
        raise IdentifierError(
            f"invalid resource ID {raw!r}: expected format {_expected(fields)}"
        )
    parts = raw.split(SEPARATOR)
    if len(parts) != len(fields) or any(not p for p in parts):
        raise IdentifierError(
            f"invalid resource ID {raw!r}: expected format {_expected(fields)}"
        )
    try:
        cluster_id = parse_cluster_id(parts[0])
    except IdentifierError as e:
        raise IdentifierError(f"invalid resource ID {raw!r}: {e}") from e
    return (cluster_id, *parts[1:])


def parse_user_id(raw: str) -> tuple[int, str]:
    cluster_id, username = parse_composite(raw, USER_FORMAT)
    return cluster_id, username


def parse_database_id(raw: str) -> tuple[int, str]:
    cluster_id, name = parse_composite(raw, DATABASE_FORMAT)
    return cluster_id, name


def parse_extension_id(raw: str) -> tuple[int, str, str]:
    cluster_id, extension, database = parse_composite(raw, EXTENSION_FORMAT)
    return cluster_id, extension, database


def parse_grant_id(raw: str) -> tuple[int, str, str]:
    cluster_id, username, database = parse_composite(raw, GRANT_FORMAT)
    return cluster_id, username, database
