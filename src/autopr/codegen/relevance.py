"""Keyword-based ranking of repository files for a task.

Ranking is cheap and deterministic so it can run on every job before any
LLM call: path tokens matching task keywords score highest, documentation
and manifest files get a small boost, and generated or binary-looking
files are dropped.
"""

import re
from pathlib import PurePosixPath
from typing import Dict, List, Sequence

_PATH_TOKEN = re.compile(r"[a-z0-9]+")

# Always useful context for the generator
ANCHOR_FILES = frozenset(
    {
        "readme.md",
        "readme",
        "readme.rst",
        "package.json",
        "pyproject.toml",
        "setup.py",
        "cargo.toml",
        "go.mod",
        "pom.xml",
    }
)

BINARY_SUFFIXES = frozenset(
    {
        ".png", ".jpg", ".jpeg", ".gif", ".ico", ".pdf", ".zip", ".gz",
        ".tar", ".jar", ".woff", ".woff2", ".ttf", ".eot", ".mp4", ".mp3",
        ".so", ".dylib", ".dll", ".exe", ".bin", ".pyc", ".lock",
    }
)


def score_path(path: str, keywords: Sequence[str]) -> float:
    """Score how relevant ``path`` looks for ``keywords``.

    Filename matches count double directory matches; partial matches
    (keyword contained in a token) count half.
    """
    pure = PurePosixPath(path.lower())
    name_tokens = _PATH_TOKEN.findall(pure.name)
    dir_tokens = _PATH_TOKEN.findall(str(pure.parent))

    score = 0.0
    for keyword in keywords:
        if keyword in name_tokens:
            score += 2.0
        elif any(keyword in token for token in name_tokens):
            score += 1.0
        if keyword in dir_tokens:
            score += 1.0
        elif any(keyword in token for token in dir_tokens):
            score += 0.5

    if pure.name in ANCHOR_FILES:
        score += 0.75
    # Shallow files are more often entry points
    score -= 0.05 * len(pure.parts)
    return score


def rank_files(
    files: Sequence[str],
    keywords: Sequence[str],
    limit: int,
) -> List[str]:
    """Return at most ``limit`` files, most relevant first.

    Ties keep the original (sorted tree) order.
    """
    scores: Dict[str, float] = {}
    for path in files:
        if PurePosixPath(path).suffix.lower() in BINARY_SUFFIXES:
            continue
        scores[path] = score_path(path, keywords)

    ranked = sorted(scores, key=lambda p: scores[p], reverse=True)
    return ranked[:limit]
