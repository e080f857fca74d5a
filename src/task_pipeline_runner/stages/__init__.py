from .base import HeartbeatPump, Stage, StageContext, StageRegistry, StageResult, StageRunner
from .test_generation import TestGenerationStage
from .verification import VerificationStage, VerifyState, parse_test_output

__all__ = [
    "HeartbeatPump",
    "Stage",
    "StageContext",
    "StageRegistry",
    "StageResult",
    "StageRunner",
    "TestGenerationStage",
    "VerificationStage",
    "VerifyState",
    "parse_test_output",
]
