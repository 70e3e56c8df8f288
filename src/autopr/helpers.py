"""Small pure helpers shared by the pipeline and the code generator."""

import re
import uuid
from typing import List

BRANCH_PREFIX = "autopr/"

_WORD_PATTERN = re.compile(r"[a-z0-9_]+")

_STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "can",
        "add", "all", "any", "do", "does", "for", "from", "has", "have",
        "in", "into", "is", "it", "its", "make", "new", "of", "on", "or",
        "our", "please", "should", "so", "some", "that", "the", "their",
        "then", "there", "this", "to", "up", "use", "using", "was", "we",
        "when", "which", "will", "with", "you", "your",
    }
)


def generate_branch_name() -> str:
    """Return a fresh branch name of the form ``autopr/<32 hex chars>``.

    Each call draws a new uuid4, so names are unique per call.
    """
    return f"{BRANCH_PREFIX}{uuid.uuid4().hex}"


def extract_keywords(task: str, max_keywords: int = 10) -> List[str]:
    """Extract search keywords from a natural-language task.

    Lowercases the task, drops stopwords and tokens shorter than three
    characters, and keeps first-seen order without duplicates.

    Example:
        >>> extract_keywords("Add a LICENSE file with the MIT license")
        ['license', 'file', 'mit']
    """
    keywords: List[str] = []
    for word in _WORD_PATTERN.findall(task.lower()):
        if len(word) < 3 or word in _STOPWORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) >= max_keywords:
            break
    return keywords


def sandbox_project_id(job_id: str) -> str:
    """Sandbox project id owned by one job."""
    return f"job-{job_id}"
