# alertflow Task Queue Package
from .base import TaskQueue, validate_task
from .memory import InMemoryTaskQueue
from .redis_queue import RedisTaskQueue
