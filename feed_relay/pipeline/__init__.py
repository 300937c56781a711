"""
Processing stages after fetching: summarization, semantic deduplication
and publication, plus the runner that wires them together.
"""

from .deduplication import DeduplicationService, rank_candidates
from .publication import PublicationService, PublishCandidate, PublishOutcome, PublishResult
from .runner import PipelineReport, run_pipeline
from .summarization import SummarizationService

__all__ = [
    "DeduplicationService",
    "PipelineReport",
    "PublicationService",
    "PublishCandidate",
    "PublishOutcome",
    "PublishResult",
    "SummarizationService",
    "rank_candidates",
    "run_pipeline",
]
