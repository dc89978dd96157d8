from .config import (DEFAULT_DB_TIMEOUT, get_default_timeout, get_path_config,
                     get_section, load_config)
from .connection import (DatabaseError, apply_pragmas, get_connection,
                         iso_utcnow, parse_iso)
from .schema import CURRENT_SCHEMA_VERSION, SchemaMigrator, ensure_schema

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "DEFAULT_DB_TIMEOUT",
    "DatabaseError",
    "apply_pragmas",
    "get_connection",
    "get_default_timeout",
    "get_path_config",
    "get_section",
    "iso_utcnow",
    "load_config",
    "parse_iso",
    "SchemaMigrator",
    "ensure_schema",
]
