from .store import Collection, Database, open_database

__all__ = ["Collection", "Database", "open_database"]
