"""LLM code generation: file relevance, selection, and change proposals."""

from src.autopr.codegen.models import CodeGeneration, FileAction, FileOperation
from src.autopr.codegen.generator import CodeGenerationError, LLMCodeGenerator

__all__ = [
    "CodeGeneration",
    "CodeGenerationError",
    "FileAction",
    "FileOperation",
    "LLMCodeGenerator",
]
