# alertflow Engine Package
from .base import AnalysisEngine, CancellationToken, call_with_token
from .echo import EchoAnalysisEngine
from .http_engine import HTTPAnalysisEngine
