"""
Reconciliation Module for the Inventory Change Pipeline

Detects reservation changes that never reached the distribution channel and
repairs the channel's inventory with idempotent recompute calls.

Main components:
- canonicalizer: Audit log row normalization and relevance
- correlator: Date ranges of cascaded reservation deletes
- gap_detector: Missing dispatch detection against the outbound queue
- grouper: Interval merge of missing triggers per hotel
- dispatcher: Remediation calls with retry and outcome logging
- pipeline: One window through all stages
- scheduler: Cadences, run locks and the cost model

Usage:
    from src.reconciliation import ReconciliationPipeline, DispatchGapDetector

    pipeline = ReconciliationPipeline(repo, DispatchGapDetector(repo), repo)
    report = pipeline.run(since, until, cadence="hourly")
"""

from src.reconciliation.canonicalizer import Canonicalizer, TableNaming, is_relevant
from src.reconciliation.correlator import CascadeCorrelator
from src.reconciliation.dispatcher import DispatchResult, RemediationDispatcher
from src.reconciliation.gap_detector import DispatchGapDetector
from src.reconciliation.grouper import RemediationGrouper
from src.reconciliation.pipeline import ReconciliationPipeline, RunReport
from src.reconciliation.scheduler import (
    Cadence,
    CostModel,
    ReconciliationMonitor,
    ReconciliationScheduler,
)

__all__ = [
    "Canonicalizer",
    "TableNaming",
    "is_relevant",
    "CascadeCorrelator",
    "DispatchGapDetector",
    "RemediationGrouper",
    "RemediationDispatcher",
    "DispatchResult",
    "ReconciliationPipeline",
    "RunReport",
    "Cadence",
    "CostModel",
    "ReconciliationMonitor",
    "ReconciliationScheduler",
]

__version__ = "1.0.0"
