from buildfleet.diagnostics.checks import CheckResult, DiagnosticCheck
from buildfleet.diagnostics.service import DiagnosticReport, DiagnosticsService, TemplateFreshness

__all__ = ["CheckResult", "DiagnosticCheck", "DiagnosticReport", "DiagnosticsService", "TemplateFreshness"]
