from timetrack.models.time_entry import time_entries_table
from timetrack.models.user import users_table

__all__ = [
    "time_entries_table",
    "users_table",
]
