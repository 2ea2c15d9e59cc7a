"""WAL segment naming and ordering."""

import re
from dataclasses import dataclass
from typing import Optional

# Timeline (8 hex) + log (8 hex) + segment (8 hex).
SEGMENT_RE = re.compile(r"^[0-9A-F]{24}$")
# <segment>.<offset>.backup, written by pg_backup_stop().
BACKUP_HISTORY_RE = re.compile(r"^[0-9A-F]{24}\.[0-9A-F]{8}\.backup$")

ARCHIVE_SUFFIXES = (".zst.gpg", ".zst")


def strip_archive_suffix(name: str) -> str:
    """Return the WAL name of an archived object name."""
    for suffix in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def segment_key(wal_name: str) -> Optional[str]:
    """Return the ordering key of a WAL name, or None if it is not ordered.

    Segments and backup history files order by their 24 character segment
    name, which sorts chronologically. Timeline history files and anything
    unknown have no key.
    """
    if SEGMENT_RE.match(wal_name) or BACKUP_HISTORY_RE.match(wal_name):
        return wal_name[:24]
    return None


@dataclass(frozen=True)
class WalSegment:
    """One archived WAL file."""

    name: str
    size: int = 0
    location: Optional[str] = None

    @property
    def key(self) -> Optional[str]:
        return segment_key(self.name)

    def older_than(self, horizon: str) -> bool:
        """True if this segment sorts strictly before ``horizon``.

        Unordered names are never older than anything, so cleanup leaves
        them alone.
        """
        key = self.key
        if key is None:
            return False
        return key < horizon[:24]
