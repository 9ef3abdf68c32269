from .connection import Base, get_db, get_engine, get_session_local, init_db, session_scope

__all__ = ["Base", "get_db", "get_engine", "get_session_local", "init_db", "session_scope"]
