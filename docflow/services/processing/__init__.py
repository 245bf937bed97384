"""Result processors for the knowledge-base and question-file pipelines."""

from .base import ProcessedResult, ResultProcessor, assemble_text, chunk_text, split_windows
from .knowledge_base import KnowledgeBaseProcessor
from .question_file import QuestionFileProcessor

__all__ = [
    "ProcessedResult",
    "ResultProcessor",
    "KnowledgeBaseProcessor",
    "QuestionFileProcessor",
    "assemble_text",
    "chunk_text",
    "split_windows",
]
