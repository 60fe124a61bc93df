"""Orchestrator module - Sessions, spawning, quality validation and refinement."""

from .batch import BatchProcessor
from .facade import Orchestrator, ParallelBatchResult, SpawnResult, ValidationResult, build_orchestrator
from .ledger import SessionLedger
from .quality import QualityAssessment, QualityValidator, ValidationContext
from .refinement import RefinementManager
from .spawner import SpawnController, SpawnRequest

__all__ = [
	"BatchProcessor",
	"Orchestrator",
	"ParallelBatchResult",
	"QualityAssessment",
	"QualityValidator",
	"RefinementManager",
	"SessionLedger",
	"SpawnController",
	"SpawnRequest",
	"SpawnResult",
	"ValidationContext",
	"ValidationResult",
	"build_orchestrator",
]
