# alertflow Repositories Package
from .base import TaskRepository, ResultRepository
from .memory import InMemoryTaskRepository, InMemoryResultRepository
from .sql import SQLTaskRepository, SQLResultRepository
