from .base import Repository, UnitOfWork
from .memory import InMemoryRepository


def build_repository(database_url: str | None) -> Repository:
    """In-memory repository when no database is configured, SQLModel otherwise."""
    if not database_url:
        return InMemoryRepository()
    from .sql import SqlRepository

    return SqlRepository.from_url(database_url)


__all__ = ["Repository", "UnitOfWork", "InMemoryRepository", "build_repository"]
