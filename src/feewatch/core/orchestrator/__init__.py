"""Orchestrator - scan cycles, continuous loop, progress reset."""

from .scanner import ScanOrchestrator, ScanResult, build_orchestrator

__all__ = [
    "ScanOrchestrator",
    "ScanResult",
    "build_orchestrator",
]
