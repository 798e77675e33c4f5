"""Diagnosis and repair of persisted shift aggregates."""

from .service import (
    CorrectionAudit,
    CorrectionDiagnosis,
    CorrectionMethod,
    CorrectionRequest,
    CorrectionResult,
    CorrectionService,
)

__all__ = [
    "CorrectionAudit",
    "CorrectionDiagnosis",
    "CorrectionMethod",
    "CorrectionRequest",
    "CorrectionResult",
    "CorrectionService",
]
