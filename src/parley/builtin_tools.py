"""Simulated local tools.

These stand in for real search, file analysis and sandboxed execution
backends so a conversation can exercise the full tool-call protocol
without a tool-hosting server.  Outputs are deterministic.
"""

import hashlib
import os

from parley.errors import ToolExecutionError
from parley.tools import Tool, tool

MAX_SEARCH_RESULTS = 10


@tool
def web_search(query: str, max_results: int = 3):
    """Search the web and return the top results.

    Args:
        query: Search terms.
        max_results: Number of results to return (1-10).
    """
    query = query.strip()
    if not query:
        raise ToolExecutionError("query must not be empty")
    count = max(1, min(int(max_results), MAX_SEARCH_RESULTS))
    slug = "-".join(query.lower().split())
    return {
        "query": query,
        "results": [
            {
                "title": f"{query} - result {i + 1}",
                "url": f"https://search.example.com/{slug}/{i + 1}",
                "snippet": f"Simulated result {i + 1} for '{query}'.",
            }
            for i in range(count)
        ],
    }


@tool
def file_analyzer(path: str, content: str = ""):
    """Report basic statistics about a file.

    Args:
        path: File name; its extension decides the reported file type.
        content: File text. When empty the file is read from disk.
    """
    if not content:
        if not os.path.isfile(path):
            raise ToolExecutionError(f"file not found: {path}")
        with open(path, encoding="utf-8", errors="replace") as f:
            content = f.read()
    extension = os.path.splitext(path)[1].lstrip(".").lower()
    lines = content.splitlines()
    return {
        "path": path,
        "type": extension or "text",
        "lines": len(lines),
        "words": len(content.split()),
        "characters": len(content),
        "blank_lines": sum(1 for line in lines if not line.strip()),
        "sha256": hashlib.sha256(content.encode("utf-8")).hexdigest(),
    }


@tool
def code_executor(code: str, language: str = "python"):
    """Run a code snippet in the sandbox and return its output.

    The sandbox is simulated: the snippet is inspected, never run.

    Args:
        code: Source code to run.
        language: Language of the snippet.
    """
    if not code.strip():
        raise ToolExecutionError("no code to execute")
    lines = code.strip().splitlines()
    return {
        "language": language,
        "status": "simulated",
        "exit_code": 0,
        "lines_executed": len(lines),
        "stdout": f"[simulated {language} run of {len(lines)} line(s)]",
    }


def builtin_tools() -> list[Tool]:
    return [web_search, file_analyzer, code_executor]
