"""
bewhere_pipeline.core — the extract / transform / load contracts and the Pipeline runner.

    from bewhere_pipeline.core import BaseExtractor, BaseTransformer, UpsertLoader, Pipeline
"""

from bewhere_pipeline.core.extractor import BaseExtractor, ExtractionResult, Extractor
from bewhere_pipeline.core.loader import Loader, LoadResult, UpsertLoader
from bewhere_pipeline.core.pipeline import (
    Pipeline,
    RunnablePipeline,
    RunResult,
    RunStats,
    RunStatus,
)
from bewhere_pipeline.core.transformer import (
    BaseTransformer,
    RowError,
    TransformationResult,
    Transformer,
    TransformIssue,
)

__all__ = [
    "BaseExtractor",
    "BaseTransformer",
    "ExtractionResult",
    "Extractor",
    "LoadResult",
    "Loader",
    "Pipeline",
    "RowError",
    "RunResult",
    "RunStats",
    "RunStatus",
    "RunnablePipeline",
    "TransformIssue",
    "TransformationResult",
    "Transformer",
    "UpsertLoader",
]
