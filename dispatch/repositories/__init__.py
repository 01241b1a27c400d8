from dispatch.repositories.tasks import InMemoryTasksRepository, PostgresTasksRepository
from dispatch.repositories.workers import InMemoryWorkersRepository, PostgresWorkersRepository

__all__ = [
    "InMemoryTasksRepository",
    "PostgresTasksRepository",
    "InMemoryWorkersRepository",
    "PostgresWorkersRepository",
]
