# alertflow Service Package
from .admission import AdmissionCircuitBreaker, AdmissionState
from .analysis import AnalysisService, AnalysisRequest
