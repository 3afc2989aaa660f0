"""Atlassian Document Format (ADF) ↔ plain text."""

from __future__ import annotations

from typing import Any


def adf_to_text(node: Any) -> str:
    """Flatten an ADF document (or any sub-node) into readable text.

    Strings pass through unchanged so plain-text descriptions from older
    API versions are accepted too.
    """
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return "".join(adf_to_text(child) for child in node)

    kind = node.get("type", "")
    attrs = node.get("attrs") or {}

    if kind == "text":
        return node.get("text", "")
    if kind == "hardBreak":
        return "\n"
    if kind == "mention":
        return attrs.get("text", "@user")
    if kind in ("inlineCard", "blockCard"):
        return attrs.get("url", "")
    if kind == "emoji":
        return attrs.get("text", attrs.get("shortName", ""))
    if kind == "rule":
        return "\n---\n"

    inner = adf_to_text(node.get("content", []))
    if kind == "heading":
        level = int(attrs.get("level", 1))
        return f"{'#' * level} {inner}\n\n"
    if kind == "codeBlock":
        return f"```\n{inner}\n```\n\n"
    if kind == "listItem":
        return f"- {inner.strip()}\n"
    if kind == "blockquote":
        quoted = "\n".join(f"> {line}" for line in inner.strip().splitlines())
        return f"{quoted}\n\n"
    if kind == "paragraph":
        return f"{inner}\n\n"
    if kind in ("bulletList", "orderedList"):
        return f"{inner}\n"
    return inner


def text_to_adf(text: str) -> dict[str, Any]:
    """Wrap plain text as an ADF document, one paragraph per line."""
    paragraphs: list[dict[str, Any]] = []
    for line in text.split("\n"):
        if line:
            paragraphs.append({"type": "paragraph", "content": [{"type": "text", "text": line}]})
        else:
            paragraphs.append({"type": "paragraph", "content": []})
    return {"type": "doc", "version": 1, "content": paragraphs}
