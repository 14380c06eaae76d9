"""
Archive store migrations.
Each migration is a Python file named mNNN_<what>.py with:
  - MIGRATION_ID: unique identifier
  - DEPENDS_ON: list of migration IDs this depends on
  - up(db_path): apply, returning {"success": bool, "message": str, ...}
"""

from pathlib import Path

# Export runner functions for stable imports
from .runner import (
    get_applied_migrations,
    get_pending_migrations,
    run_migration,
    run_all_pending,
    get_status,
)

MIGRATIONS_DIR = Path(__file__).parent
