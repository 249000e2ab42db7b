"""Normalization pipelines and the transform runner."""

from biodiversity_ingest.transform.occurrences import build_occurrence_pipeline
from biodiversity_ingest.transform.pipeline import (
    TransformPipeline,
    TransformResult,
    TransformStep,
    compose,
    execute_pipeline,
)
from biodiversity_ingest.transform.taxa import build_taxa_pipeline

__all__ = [
    "TransformPipeline",
    "TransformResult",
    "TransformStep",
    "build_occurrence_pipeline",
    "build_taxa_pipeline",
    "compose",
    "execute_pipeline",
]
