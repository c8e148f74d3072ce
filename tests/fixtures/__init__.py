# Test fixtures
from .sample_documents import (
    SAMPLE_README_ORG,
    SAMPLE_CHANGELOG,
    GENERATED_CHANGELOG,
    code_block,
    create_sample_ast,
)

__all__ = [
    "SAMPLE_README_ORG",
    "SAMPLE_CHANGELOG",
    "GENERATED_CHANGELOG",
    "code_block",
    "create_sample_ast",
]
