"""
Memory Extraction Pipeline

Admission gate (gate.py), remember/skip classifier adapter (classifier.py) and
structured fact extractor (extractor.py) for the chatmem memory store.
"""

from .classifier import AnthropicClassifier, ClassificationProvider, ClassificationResult
from .extractor import (
    AnthropicExtractionProvider,
    ExtractionContext,
    ExtractionProvider,
    StructuredExtractor,
    calculate_salience,
    rank_by_relevance,
    rank_by_salience,
)
from .gate import (
    Embedder,
    GateContext,
    GateDecision,
    GateMode,
    MemoryGate,
    bypass_decision,
    cosine_similarity,
    gate,
    should_skip_gate,
)

__all__ = [
    "AnthropicClassifier",
    "AnthropicExtractionProvider",
    "ClassificationProvider",
    "ClassificationResult",
    "Embedder",
    "ExtractionContext",
    "ExtractionProvider",
    "GateContext",
    "GateDecision",
    "GateMode",
    "MemoryGate",
    "StructuredExtractor",
    "bypass_decision",
    "calculate_salience",
    "cosine_similarity",
    "gate",
    "rank_by_relevance",
    "rank_by_salience",
    "should_skip_gate",
]
