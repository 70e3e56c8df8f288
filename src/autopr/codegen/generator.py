"""LLM-backed code generation for the job pipeline.

This module implements the three code-generation calls of the pipeline:
- find_relevant_files: keyword ranking of the repository tree
- select_files_to_modify: the LLM picks which relevant files to read
- generate_code_changes: the LLM proposes file operations, optional shell
  commands, and an explanation used as the PR body

The generator talks to an OpenAI-compatible endpoint through LangChain's
ChatOpenAI client and expects JSON answers.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import ValidationError

from src.autopr.codegen.models import CodeGeneration, FileOperation
from src.autopr.codegen.relevance import rank_files
from src.autopr.sandbox.models import Sandbox


logger = logging.getLogger(__name__)

# Fallback selection size when the LLM selection is unusable
DEFAULT_SELECTION_SIZE = 5

# Cap on the file-tree listing sent with a generation prompt
MAX_TREE_ENTRIES = 300


class FileTreeSource(Protocol):
    """Lists the files of a repository inside a sandbox."""

    async def get_file_tree(self, sandbox: Sandbox, repo_path: Path) -> List[str]:
        ...


SELECTION_SYSTEM_PROMPT = """You are a senior software engineer deciding which files of a repository must be read to implement a change.

You MUST respond with valid JSON only, with this exact structure:
{"files": ["path/one", "path/two"]}

Only choose paths from the candidate list you are given. Choose the smallest set of files that must be read or edited to implement the task."""


GENERATION_SYSTEM_PROMPT = """You are a senior software engineer implementing a change request in an existing repository.

You MUST respond with valid JSON only. Do not include any text before or after the JSON object.

Respond with this exact JSON structure:
{
  "file_operations": [
    {"action": "create|modify|delete", "path": "relative/path", "content": "full new file content"}
  ],
  "shell_commands": ["optional command run from the repository root"],
  "explanation": "markdown description of the change for the pull request"
}

Rules:
- Paths are relative to the repository root.
- "create" and "modify" carry the COMPLETE new file content, never a diff.
- "delete" carries no content.
- Only add shell commands when the change needs them (e.g. regenerating a lockfile).
- Keep the change minimal and consistent with the existing code style."""


def _build_selection_prompt(task: str, candidates: Sequence[str]) -> str:
    listing = "\n".join(f"- {path}" for path in candidates)
    return f"""**Task:** {task}

**Candidate files:**
{listing}

Which files must be read to implement the task? Answer as JSON."""


def _build_generation_prompt(
    repo_url: str,
    task: str,
    file_contents: Dict[str, str],
    relevant_files: Sequence[str],
    all_files: Sequence[str],
    keywords: Sequence[str],
) -> str:
    tree = list(all_files[:MAX_TREE_ENTRIES])
    if len(all_files) > MAX_TREE_ENTRIES:
        tree.append(f"... ({len(all_files) - MAX_TREE_ENTRIES} more files)")

    sections = [
        f"**Repository:** {repo_url}",
        f"**Task:** {task}",
        f"**Keywords:** {', '.join(keywords) if keywords else 'none'}",
        "**Project structure:**\n" + "\n".join(tree),
        "**Relevant files:**\n" + "\n".join(relevant_files),
    ]
    for path, content in file_contents.items():
        sections.append(f"**File: {path}**\n```\n{content}\n```")
    sections.append("Implement the task. Answer as JSON.")
    return "\n\n".join(sections)


def _parse_llm_response(response_text: str) -> Any:
    """Parse a JSON answer, tolerating a surrounding markdown code fence."""
    text = response_text.strip()

    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]

    if text.endswith("```"):
        text = text[:-3]

    return json.loads(text.strip())


class CodeGenerationError(Exception):
    """Raised when the LLM cannot produce a usable change.

    Attributes:
        message: Human-readable error description.
        cause: The underlying exception, if any.
    """

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


class LLMCodeGenerator:
    """Code generation service backed by an OpenAI-compatible LLM.

    Attributes:
        sandboxes: Sandbox service used to list repository files.
        llm_url: URL of the OpenAI-compatible endpoint.
        model_name: Model used for inference.
        api_key: Endpoint API key; self-hosted endpoints ignore it.
        max_relevant_files: Upper bound on files returned by
            find_relevant_files.
        timeout: Request timeout in seconds.
        temperature: Sampling temperature.

    Example:
        >>> generator = LLMCodeGenerator(
        ...     sandboxes=LocalSandboxService(config),
        ...     llm_url="http://localhost:8000/v1",
        ...     model_name="Qwen/Qwen2.5-Coder-14B-Instruct-GPTQ-Int4",
        ... )
        >>> generation = await generator.generate_code_changes(...)
    """

    def __init__(
        self,
        sandboxes: FileTreeSource,
        llm_url: str,
        model_name: str,
        api_key: Optional[str] = None,
        max_relevant_files: int = 20,
        timeout: float = 120.0,
        temperature: float = 0.1,
    ):
        self.sandboxes = sandboxes
        self.llm_url = llm_url
        self.model_name = model_name
        self.api_key = api_key
        self.max_relevant_files = max_relevant_files
        self.timeout = timeout
        self.temperature = temperature
        self._llm: Optional[ChatOpenAI] = None

    @property
    def llm(self) -> ChatOpenAI:
        """The LLM client, created on first use."""
        if self._llm is None:
            self._llm = ChatOpenAI(
                base_url=self.llm_url,
                model=self.model_name,
                temperature=self.temperature,
                timeout=self.timeout,
                api_key=self.api_key or "not-needed",
            )
        return self._llm

    async def find_relevant_files(
        self, sandbox: Sandbox, repo_path: Path, keywords: Sequence[str]
    ) -> List[str]:
        """Rank the repository tree against the task's keywords."""
        files = await self.sandboxes.get_file_tree(sandbox, repo_path)
        relevant = rank_files(files, keywords, self.max_relevant_files)

        logger.info(
            "Relevant files found",
            extra={
                "project_id": sandbox.project_id,
                "total_files": len(files),
                "relevant_files": len(relevant),
            },
        )
        return relevant

    async def select_files_to_modify(
        self,
        sandbox: Sandbox,
        task: str,
        relevant_files: Sequence[str],
    ) -> List[str]:
        """Ask the LLM which relevant files must be read.

        Answers naming files outside ``relevant_files`` are filtered. If
        the LLM call or its answer is unusable, the top-ranked files are
        used instead.
        """
        if not relevant_files:
            return []

        messages = [
            SystemMessage(content=SELECTION_SYSTEM_PROMPT),
            HumanMessage(content=_build_selection_prompt(task, relevant_files)),
        ]

        try:
            response = await self.llm.ainvoke(messages)
            data = _parse_llm_response(str(response.content))
            chosen = data.get("files", []) if isinstance(data, dict) else data
            if not isinstance(chosen, list):
                raise ValueError("files is not a list")
        except Exception as e:
            logger.warning(
                "File selection failed, using top-ranked files",
                extra={
                    "project_id": sandbox.project_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return list(relevant_files[:DEFAULT_SELECTION_SIZE])

        allowed = set(relevant_files)
        selected: List[str] = []
        for path in chosen:
            if isinstance(path, str) and path in allowed and path not in selected:
                selected.append(path)

        if not selected:
            selected = list(relevant_files[:DEFAULT_SELECTION_SIZE])

        logger.info(
            "Files selected",
            extra={"project_id": sandbox.project_id, "files": selected},
        )
        return selected

    async def generate_code_changes(
        self,
        repo_url: str,
        task: str,
        file_contents: Dict[str, str],
        relevant_files: Sequence[str],
        all_files: Sequence[str],
        keywords: Sequence[str],
    ) -> CodeGeneration:
        """Ask the LLM for the change implementing ``task``.

        Raises:
            CodeGenerationError: If the LLM call fails or the answer is not
                a valid change proposal.
        """
        logger.info(
            "Generating code changes",
            extra={
                "repo_url": repo_url,
                "task": task[:100],
                "context_files": len(file_contents),
            },
        )

        messages = [
            SystemMessage(content=GENERATION_SYSTEM_PROMPT),
            HumanMessage(
                content=_build_generation_prompt(
                    repo_url, task, file_contents, relevant_files, all_files, keywords
                )
            ),
        ]

        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            raise CodeGenerationError(f"LLM invocation failed: {e}", cause=e) from e

        response_text = response.content
        if not isinstance(response_text, str):
            raise CodeGenerationError(
                f"Unexpected response type: {type(response_text).__name__}"
            )

        try:
            data = _parse_llm_response(response_text)
        except json.JSONDecodeError as e:
            logger.warning(
                "Failed to parse LLM response as JSON",
                extra={"response_preview": response_text[:200], "error": str(e)},
            )
            raise CodeGenerationError(f"Invalid JSON response: {e}", cause=e) from e

        generation = self._to_generation(data)
        logger.info(
            "Code changes generated",
            extra={
                "repo_url": repo_url,
                "operations": len(generation.file_operations),
                "commands": len(generation.shell_commands),
            },
        )
        return generation

    @staticmethod
    def _to_generation(data: Any) -> CodeGeneration:
        if not isinstance(data, dict):
            raise CodeGenerationError("Response is not a JSON object")

        raw_operations = data.get("file_operations") or []
        if not isinstance(raw_operations, list):
            raise CodeGenerationError("file_operations is not a list")

        try:
            operations = [FileOperation.model_validate(op) for op in raw_operations]
        except ValidationError as e:
            raise CodeGenerationError(f"Invalid file operation: {e}", cause=e) from e

        if not operations:
            raise CodeGenerationError("Response contains no file operations")

        commands = data.get("shell_commands") or []
        if not isinstance(commands, list):
            commands = []

        return CodeGeneration(
            file_operations=operations,
            shell_commands=[str(c) for c in commands if str(c).strip()],
            explanation=str(data.get("explanation") or ""),
        )
