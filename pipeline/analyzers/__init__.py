"""
Analyzers: the worker driver, the shipped analyzer strategies and the
alert manager that consumes their findings.
"""

from pipeline.analyzers.alert_manager import AlertManager
from pipeline.analyzers.base import AnalysisContext, Analyzer, AnalyzerWorker, Evaluation
from pipeline.analyzers.firewall_licenses import FirewallLicenseAnalyzer
from pipeline.analyzers.mfa import MFAAnalyzer
from pipeline.analyzers.stale_users import StaleUserAnalyzer


def default_analyzers():
    return [StaleUserAnalyzer(), MFAAnalyzer(), FirewallLicenseAnalyzer()]


__all__ = [
    "AlertManager",
    "AnalysisContext",
    "Analyzer",
    "AnalyzerWorker",
    "Evaluation",
    "FirewallLicenseAnalyzer",
    "MFAAnalyzer",
    "StaleUserAnalyzer",
    "default_analyzers",
]
