"""Test-run capture: supervise, normalize, classify, report."""

from testscope.capture.classifier import ResultClassifier
from testscope.capture.dialects import Dialect, DialectRegistry, dialect_registry
from testscope.capture.models import (
    CaptureOutcome,
    DiagnosticReport,
    FailureKind,
    FailureRecord,
    RawCapture,
    ReportContext,
    RunOutcome,
    SessionProgress,
    SessionState,
    SourceLocation,
    TestResult,
    TestRunRequest,
    TestStatistics,
    TestTiming,
)
from testscope.capture.normalizer import OutputNormalizer, normalize
from testscope.capture.report import ReportSynthesizer
from testscope.capture.runner import ProcessRunner, RunHandle, RunRegistry, SystemClock
from testscope.capture.session import CaptureSession

__all__ = [
    "CaptureOutcome",
    "CaptureSession",
    "DiagnosticReport",
    "Dialect",
    "DialectRegistry",
    "FailureKind",
    "FailureRecord",
    "OutputNormalizer",
    "ProcessRunner",
    "RawCapture",
    "ReportContext",
    "ReportSynthesizer",
    "ResultClassifier",
    "RunHandle",
    "RunOutcome",
    "RunRegistry",
    "SessionProgress",
    "SessionState",
    "SourceLocation",
    "SystemClock",
    "TestResult",
    "TestRunRequest",
    "TestStatistics",
    "TestTiming",
    "dialect_registry",
    "normalize",
]
