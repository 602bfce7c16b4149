"""memindex database layer."""

from memindex.db.connection import Database
from memindex.db.migrations import MIGRATIONS, ensure_fts_table, initialize, run_migrations
from memindex.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "initialize",
    "ensure_fts_table",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
