"""
Backup artifact naming.

Format: pg-backup_{database}_{YYYY-MM-DD_HH-MM-SS}{ext}
"""

from datetime import datetime, timezone
from typing import Optional


BACKUP_NAME_PREFIX = 'pg-backup'
TIMESTAMP_FORMAT = '%Y-%m-%d_%H-%M-%S'

# plain is handled separately since its extension depends on compression
FORMAT_EXTENSIONS = {
    'custom': '.dump',
    'tar': '.tar',
    'directory': '',  # pg_dump writes a directory tree, not a file
}


def backup_extension(dump_format: str, compression: bool) -> str:
    """
    Get the artifact extension for a pg_dump format.

    Args:
        dump_format: One of 'plain', 'custom', 'directory', 'tar'
        compression: Whether plain output is gzipped

    Returns:
        Extension including the leading dot, or '' for directory format
    """
    if dump_format == 'plain':
        return '.sql.gz' if compression else '.sql'
    return FORMAT_EXTENSIONS.get(dump_format, '.dump')


def generate_backup_name(
    database: str,
    dump_format: str,
    compression: bool,
    now: Optional[datetime] = None
) -> str:
    """
    Generate the artifact filename for a backup run.

    Args:
        database: Database name
        dump_format: pg_dump format
        compression: Whether plain output is gzipped
        now: Timestamp of the run (defaults to the current time). Naive
            datetimes are taken to be UTC already.

    Returns:
        Filename (without path)
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    timestamp = now.strftime(TIMESTAMP_FORMAT)
    extension = backup_extension(dump_format, compression)

    return f"{BACKUP_NAME_PREFIX}_{database}_{timestamp}{extension}"
