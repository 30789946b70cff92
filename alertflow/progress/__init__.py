# alertflow Progress Package
from .tracker import ProgressTracker, InMemoryProgressTracker, RedisProgressTracker
